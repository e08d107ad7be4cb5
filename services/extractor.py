import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

_ABSOLUTE_HTTP = re.compile(r"^https?://", re.IGNORECASE)


def extract_metadata(html: str, url: str) -> dict:
    """
    Extract preview fields from an HTML document fetched from `url`.
    Returns a dict with title, description, image, site_name and favicon;
    only `image` can be None.
    """
    soup = BeautifulSoup(html, "html.parser")
    domain = bare_domain(url)

    return {
        "title": _get_title(soup) or domain,
        "description": _get_description(soup) or "",
        "image": resolve_image(_get_image(soup), url),
        "site_name": _meta(soup, property="og:site_name") or domain,
        "favicon": favicon_url(domain),
    }


def bare_domain(url: str) -> str:
    hostname = urlparse(url).hostname or ""
    return re.sub(r"^www\.", "", hostname)


def favicon_url(domain: str) -> str:
    return f"https://www.google.com/s2/favicons?domain={domain}&sz=32"


def resolve_image(image: str | None, page_url: str) -> str | None:
    if not image or _ABSOLUTE_HTTP.match(image):
        return image
    try:
        return urljoin(page_url, image)
    except ValueError:
        return image


def _meta(soup: BeautifulSoup, **attrs) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag:
        return tag.get("content") or None
    return None


def _twitter(soup: BeautifulSoup, key: str) -> str | None:
    return _meta(soup, name=f"twitter:{key}") or _meta(soup, property=f"twitter:{key}")


def _get_title(soup: BeautifulSoup) -> str | None:
    return (
        _meta(soup, property="og:title")
        or _twitter(soup, "title")
        or (soup.title.get_text(strip=True) if soup.title else None)
    )


def _get_description(soup: BeautifulSoup) -> str | None:
    return (
        _meta(soup, property="og:description")
        or _twitter(soup, "description")
        or _meta(soup, name="description")
    )


def _get_image(soup: BeautifulSoup) -> str | None:
    return _meta(soup, property="og:image") or _twitter(soup, "image")
