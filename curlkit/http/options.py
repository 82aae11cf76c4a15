import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode, urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..common.errors import InvalidOptionKeyError, InvalidOptionValueError

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class Option(Enum):
    URL = "url"
    METHOD = "method"
    HEADERS = "headers"
    BODY = "body"
    TIMEOUT = "timeout"
    CONNECT_TIMEOUT = "connect_timeout"
    FOLLOW_REDIRECTS = "follow_redirects"
    MAX_REDIRECTS = "max_redirects"
    VERIFY_TLS = "verify_tls"
    CA_BUNDLE = "ca_bundle"
    USER_AGENT = "user_agent"
    RETURN_TRANSFER = "return_transfer"
    OUTPUT = "output"


OptionKey = Union[Option, str]


def resolve_option(key: OptionKey) -> Option:
    """Accepts an Option member, its name ("TIMEOUT") or its value ("timeout")."""
    if isinstance(key, Option):
        return key
    if isinstance(key, str):
        if key.upper() in Option.__members__:
            return Option[key.upper()]
        try:
            return Option(key.lower())
        except ValueError:
            pass
    raise InvalidOptionKeyError(f"Unknown option: {key!r}")


class TransferOptions(BaseModel):
    """
    Validated view of every option a transfer consults. Strict mode keeps
    "10" from passing as a timeout and True from passing as a redirect limit.
    """

    model_config = ConfigDict(strict=True, extra="forbid", frozen=True)

    url: Optional[str] = None
    method: str = "GET"
    headers: List[Tuple[str, str]] = Field(default_factory=list)
    body: Optional[bytes] = None
    timeout: Optional[float] = Field(default=None, ge=0)
    connect_timeout: Optional[float] = Field(default=None, ge=0)
    follow_redirects: bool = False
    max_redirects: int = Field(default=20, ge=0)
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    user_agent: Optional[str] = None
    return_transfer: bool = True
    output: Any = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value):
        if value is None:
            return value
        parts = urlsplit(value)
        if parts.scheme.lower() not in ("http", "https"):
            raise ValueError(f"unsupported URL scheme {parts.scheme!r}")
        if not parts.hostname:
            raise ValueError("URL has no host")
        return value

    @field_validator("method")
    @classmethod
    def _check_method(cls, value):
        if not TOKEN_RE.match(value):
            raise ValueError(f"invalid HTTP method {value!r}")
        return value.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _normalize_headers(cls, value):
        if value is None:
            return []
        if isinstance(value, Mapping):
            items = list(value.items())
        elif isinstance(value, (list, tuple)):
            items = list(value)
        else:
            raise ValueError("headers must be a mapping or a list")

        pairs = []
        for item in items:
            if isinstance(item, str):
                name, sep, header_value = item.partition(":")
                if not sep:
                    raise ValueError(f"header line {item!r} has no colon")
                item = (name.strip(), header_value.strip())
            if not isinstance(item, (list, tuple)) or len(item) != 2:
                raise ValueError(f"cannot read header from {item!r}")
            name, header_value = item
            if not isinstance(name, str) or not isinstance(header_value, str):
                raise ValueError("header names and values must be strings")
            if not TOKEN_RE.match(name):
                raise ValueError(f"invalid header name {name!r}")
            if "\r" in header_value or "\n" in header_value:
                raise ValueError(f"header {name!r} contains a line break")
            pairs.append((name, header_value))
        return pairs

    @field_validator("body", mode="before")
    @classmethod
    def _encode_body(cls, value):
        if isinstance(value, str):
            return value.encode("utf-8")
        if isinstance(value, bytearray):
            return bytes(value)
        if isinstance(value, Mapping):
            return urlencode({k: str(v) for k, v in value.items()}).encode("ascii")
        return value

    @field_validator("timeout", "connect_timeout", "max_redirects", mode="before")
    @classmethod
    def _reject_bool_numbers(cls, value):
        if isinstance(value, bool):
            raise ValueError("expected a number, got a boolean")
        return value

    @field_validator("user_agent")
    @classmethod
    def _check_user_agent(cls, value):
        if value is not None and ("\r" in value or "\n" in value):
            raise ValueError("user agent contains a line break")
        return value

    @field_validator("output")
    @classmethod
    def _check_output(cls, value):
        if value is not None and not callable(getattr(value, "write", None)):
            raise ValueError("output must provide a write() method")
        return value


class OptionSet:
    """
    Typed configuration container for one session. Writes are validated as a
    whole, so a rejected batch leaves the previous values untouched.
    """

    def __init__(self, defaults: Optional[Mapping[str, Any]] = None):
        self._defaults = dict(defaults or {})
        self._values = self._validate(self._defaults)

    @property
    def values(self) -> TransferOptions:
        return self._values

    def get(self, key: OptionKey) -> Any:
        return getattr(self._values, resolve_option(key).value)

    def set(self, key: OptionKey, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, options: Mapping[OptionKey, Any]) -> None:
        updates: Dict[str, Any] = {}
        for key, value in options.items():
            updates[resolve_option(key).value] = value

        current = {name: getattr(self._values, name) for name in TransferOptions.model_fields}
        current.update(updates)
        self._values = self._validate(current)
        logger.debug("Options updated: %s", ", ".join(sorted(updates)))

    def reset(self) -> None:
        self._values = self._validate(self._defaults)

    def as_dict(self) -> Dict[str, Any]:
        return {option: getattr(self._values, option.value) for option in Option}

    @staticmethod
    def _validate(values: Mapping[str, Any]) -> TransferOptions:
        try:
            return TransferOptions.model_validate(dict(values))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'options'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidOptionValueError(f"Invalid option value ({problems})", original_exception=exc)
