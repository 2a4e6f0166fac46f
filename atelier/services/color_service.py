from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping

from atelier.services.line_items import LineItem
from atelier.services.sort_utils import is_known_size

COLOR_OPTION_NAMES = ('couleur', 'color', 'colour')
SIZE_OPTION_NAMES = ('taille', 'size')
DEFAULT_VARIANT_TITLE = 'Default Title'

# French shop names to the supplier's English color names. Table order decides
# the reverse lookup, so 'Mocha' must stay ahead of 'Chocolat'.
COLOR_MAPPINGS: dict[str, str] = {
    'Noir': 'Black',
    'Blanc': 'White',
    'Bleu Azur': 'Stargazer',
    'Bleu Marine': 'French Navy',
    'Ecru': 'Raw',
    'Bleu Nuit': 'Green Bay',
    'Bordeaux': 'Burgundy',
    'Crème': 'Cream',
    'Kaki': 'Khaki',
    'Terra Cotta': 'Heritage Brown',
    'Vert Forêt': 'Glazed Green',
    'Vert Antique': 'Bottle Green',
    'Prune': 'Red Brown',
    'Bleu Indien': 'India Ink Grey',
    'Gris Chiné': 'Heather Grey',
    'Rose': 'Cotton Pink',
    'Mocha': 'Mocha',
    'Chocolat': 'Mocha',
}

_PARENTHETICAL = re.compile(r'\s*\([^)]*\)\s*')


def strip_parenthetical(value: str | None) -> str:
    return _PARENTHETICAL.sub(' ', value or '').strip()


def fold_text(value: str | None) -> str:
    decomposed = unicodedata.normalize('NFD', (value or '').strip().lower())
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def _mappings(overrides: Mapping[str, str] | None) -> dict[str, str]:
    if not overrides:
        return COLOR_MAPPINGS
    merged = dict(COLOR_MAPPINGS)
    merged.update(overrides)
    return merged


def transform_color(color: str | None, overrides: Mapping[str, str] | None = None) -> str:
    if not color:
        return ''
    table = _mappings(overrides)
    if color in table:
        return table[color]

    cleaned = strip_parenthetical(color)
    if cleaned in table:
        return table[cleaned]

    folded = fold_text(cleaned)
    for source, target in table.items():
        if fold_text(source) == folded:
            return target
    return cleaned


def reverse_transform_color(name: str | None, overrides: Mapping[str, str] | None = None) -> str:
    if not name:
        return ''
    table = _mappings(overrides)
    for source, target in table.items():
        if target == name:
            return source
    lowered = name.strip().lower()
    for source, target in table.items():
        if target.lower() == lowered:
            return source
    return name


def format_color_label(color: str | None, overrides: Mapping[str, str] | None = None) -> str:
    cleaned = strip_parenthetical(color)
    if not cleaned:
        return ''
    canonical = transform_color(cleaned, overrides)
    if canonical == cleaned:
        return cleaned
    return f'{cleaned} ({canonical})'


def _title_parts(variant_title: str | None) -> list[str]:
    title = (variant_title or '').strip()
    if not title or title == DEFAULT_VARIANT_TITLE:
        return []
    return [part.strip() for part in title.split('/') if part.strip()]


def extract_color(item: LineItem) -> str | None:
    explicit = item.option(*COLOR_OPTION_NAMES)
    if explicit:
        return explicit
    parts = _title_parts(item.variant_title)
    if len(parts) >= 2:
        return parts[-2]
    if len(parts) == 1 and not is_known_size(parts[0]):
        return parts[0]
    return None


def extract_size(item: LineItem) -> str | None:
    explicit = item.option(*SIZE_OPTION_NAMES)
    if explicit:
        return explicit
    parts = _title_parts(item.variant_title)
    if len(parts) >= 2:
        return parts[-1]
    if len(parts) == 1 and is_known_size(parts[0]):
        return parts[0]
    return None
