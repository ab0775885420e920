"""
Outbound HTML instrumentation - open pixel and click-redirect links.
Only quoted http(s) hrefs are rewritten; mailto:, tel:, fragments and
relative links are left alone.
"""
import re
from functools import lru_cache
from urllib.parse import quote

_ANCHOR_HREF = re.compile(
    r"""<a\s+(?:[^>]*?\s+)?href=(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')(?P<rest>[^>]*)>""",
    re.IGNORECASE,
)
_TRACKABLE_SCHEME = re.compile(r"^\s*https?://", re.IGNORECASE)


class LinkInstrumenter:
    def __init__(self, tracking_domain: str, scheme: str = "https"):
        self.tracking_domain = tracking_domain.strip().rstrip("/")
        self.scheme = scheme
        self.base_url = f"{scheme}://{self.tracking_domain}"

    def pixel_url(self, token: str) -> str:
        return f"{self.base_url}/pixel/{token}"

    def redirect_url(self, token: str, target: str) -> str:
        return f"{self.base_url}/redirect/{token}?url={quote(target, safe='')}"

    def add_open_pixel(self, html: str, token: str) -> str:
        """Append an invisible 1x1 image pointing at the pixel endpoint."""
        pixel = (
            f'<img src="{self.pixel_url(token)}" alt="" width="1" height="1" '
            f'style="display:none;" />'
        )
        return f"{html or ''}{pixel}"

    def wrap_links(self, html: str, token: str) -> str:
        """
        Route every http(s) link through the redirect endpoint.
        Links already on the tracking domain are skipped, so wrapping twice
        is a no-op.
        """
        if not html:
            return html or ""

        def _wrap(match: re.Match) -> str:
            group = "dq" if match.group("dq") is not None else "sq"
            url = match.group(group)
            if self.tracking_domain.lower() in url.lower():
                return match.group(0)
            if not _TRACKABLE_SCHEME.match(url):
                return match.group(0)
            # Keep everything before the href and after the closing quote
            start, end = match.span(group)
            quote_char = match.string[start - 1]
            head = match.string[match.start():start - 1]
            tail = match.string[end + 1:match.end()]
            return f"{head}{quote_char}{self.redirect_url(token, url.strip())}{quote_char}{tail}"

        return _ANCHOR_HREF.sub(_wrap, html)

    def instrument(self, html: str, token: str) -> str:
        """Pixel first, then links - the order the send path uses."""
        return self.wrap_links(self.add_open_pixel(html, token), token)


@lru_cache()
def get_link_instrumenter() -> LinkInstrumenter:
    from src.config import get_settings
    settings = get_settings()
    return LinkInstrumenter(settings.tracking_domain, settings.tracking_scheme)
