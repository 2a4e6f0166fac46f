from __future__ import annotations

import json
import re
import time
from collections.abc import Iterator
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from atelier.config import settings
from atelier.logging import get_logger
from atelier.models import Shop

logger = get_logger(__name__)

_NEXT_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


class ShopifyApiError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def parse_next_link(header: str | None) -> str | None:
    if not header:
        return None
    for part in header.split(','):
        match = _NEXT_LINK.search(part)
        if match:
            return match.group(1)
    return None


def normalize_shop_domain(shop_url: str) -> str:
    domain = (shop_url or '').strip()
    domain = re.sub(r'^https?://', '', domain)
    return domain.split('/', 1)[0]


def gid_to_id(value: str | int | None) -> str:
    if value is None:
        return ''
    return str(value).rsplit('/', 1)[-1]


def to_gid(kind: str, value: str | int) -> str:
    raw = str(value)
    if raw.startswith('gid://'):
        return raw
    return f'gid://shopify/{kind}/{raw}'


class ShopifyClient:
    def __init__(
        self,
        shop_url: str,
        access_token: str,
        *,
        api_version: str | None = None,
        timeout_seconds: int | None = None,
        delay_ms: int | None = None,
    ) -> None:
        domain = normalize_shop_domain(shop_url)
        if not domain:
            raise ValueError('Shopify store URL is required')
        if not (access_token or '').strip():
            raise ValueError('Shopify access token is required')

        version = api_version or settings.shopify_api_version
        self.base_url = f'https://{domain}/admin/api/{version}'
        self.timeout_seconds = timeout_seconds or settings.shopify_timeout_seconds
        self.delay_seconds = (settings.shopify_request_delay_ms if delay_ms is None else delay_ms) / 1000
        self.headers = {
            'X-Shopify-Access-Token': access_token.strip(),
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _url(self, path: str, params: dict | None = None) -> str:
        url = path if path.startswith('http') else f"{self.base_url}/{path.lstrip('/')}"
        if params:
            url = f'{url}?{urlencode(params)}'
        return url

    def _send(self, method: str, url: str, payload: dict | None = None) -> tuple[dict, str | None]:
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = Request(url=url, data=data, headers=self.headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode('utf-8')
                link = response.headers.get('Link')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ShopifyApiError(f'Shopify API error {exc.code} on {method} {url}: {body}', status=exc.code) from exc
        except URLError as exc:
            raise ShopifyApiError(f'Shopify API network error on {method} {url}: {exc.reason}') from exc
        finally:
            if self.delay_seconds > 0:
                time.sleep(self.delay_seconds)

        parsed = json.loads(raw) if raw.strip() else {}
        if isinstance(parsed, dict) and parsed.get('errors'):
            raise ShopifyApiError(f"Shopify API returned errors on {method} {url}: {parsed['errors']}")
        return parsed, link

    def graphql(self, query: str, variables: dict | None = None) -> dict:
        parsed, _ = self._send('POST', self._url('graphql.json'), {'query': query, 'variables': variables or {}})
        data = parsed.get('data')
        if data is None:
            raise ShopifyApiError('Shopify GraphQL response has no data')
        return data

    def get(self, path: str, params: dict | None = None) -> dict:
        parsed, _ = self._send('GET', self._url(path, params))
        return parsed

    def post(self, path: str, payload: dict) -> dict:
        parsed, _ = self._send('POST', self._url(path), payload)
        return parsed

    def iter_pages(self, path: str, key: str, params: dict | None = None) -> Iterator[list[dict]]:
        url: str | None = self._url(path, params)
        while url:
            parsed, link = self._send('GET', url)
            yield parsed.get(key) or []
            url = parse_next_link(link)


def client_for_shop(shop: Shop) -> ShopifyClient:
    return ShopifyClient(shop.shopify_url, shop.shopify_token)


def legacy_client() -> ShopifyClient:
    if not settings.shopify_url or not settings.shopify_token:
        raise ValueError('SHOPIFY_URL and SHOPIFY_TOKEN are required')
    return ShopifyClient(settings.shopify_url, settings.shopify_token)
