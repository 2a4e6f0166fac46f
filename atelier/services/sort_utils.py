from __future__ import annotations

SIZE_ORDER: tuple[str, ...] = ('XXS', 'XS', 'S', 'M', 'L', 'XL', '2XL', '3XL', '4XL', '5XL')
_SIZE_INDEX = {size: index for index, size in enumerate(SIZE_ORDER)}


def normalize_sort_text(value: str | None) -> str:
    return (value or '').strip().lower()


def size_index(size: str | None) -> int | None:
    return _SIZE_INDEX.get((size or '').strip().upper())


def is_known_size(size: str | None) -> bool:
    return size_index(size) is not None


def size_sort_key(size: str | None) -> tuple[int, int, str]:
    index = size_index(size)
    if index is None:
        return (1, 0, normalize_sort_text(size))
    return (0, index, '')


def compare_sizes(size_a: str | None, size_b: str | None) -> int:
    key_a = size_sort_key(size_a)
    key_b = size_sort_key(size_b)
    if key_a == key_b:
        return 0
    return -1 if key_a < key_b else 1


def variant_sort_key(*, sku: str | None, color: str | None, size: str | None) -> tuple[str, str, int, int, str]:
    return (normalize_sort_text(sku), normalize_sort_text(color), *size_sort_key(size))
