from typing import Union
from urllib.parse import quote, unquote


def escape(value: Union[str, bytes]) -> str:
    """
    Percent-encode everything except the RFC 3986 unreserved set
    (ALPHA / DIGIT / "-" / "." / "_" / "~"). Text is encoded as UTF-8 first.
    """
    return quote(value, safe="")


def unescape(value: str) -> str:
    """
    Decode %XX sequences. "+" is left alone; malformed escapes pass through
    unchanged.
    """
    return unquote(value, encoding="utf-8", errors="surrogateescape")
