import logging
import sys
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .common.errors import (
    AlreadyInitializedError,
    ErrorKind,
    InvalidOptionKeyError,
    NoTransferYetError,
    NotInitializedError,
    OutputWriteError,
    TransferError,
    error_to_string,
)
from .config import TransferDefaults
from .http import escaping
from .http.options import Option, OptionKey, OptionSet
from .http.result import Info, TransferResult
from .http.transport import Transport
from .interfaces import IEvidenceCollector, ITransport

logger = logging.getLogger(__name__)


class SessionState(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    READY = "READY"
    CLOSED = "CLOSED"


class Session:
    """
    Stateful transfer handle.

    A session starts UNINITIALIZED, becomes READY through init() and owns one
    Transport until close(). Every other operation requires READY.

    Usage:
        with Session.open("https://example.org/") as session:
            session.set_option(Option.FOLLOW_REDIRECTS, True)
            body = session.execute()
            status = session.get_information(Info.HTTP_CODE)
    """

    def __init__(
        self,
        defaults: Optional[TransferDefaults] = None,
        transport_factory: Callable[[], ITransport] = Transport,
        evidence: Optional[IEvidenceCollector] = None,
    ):
        self.defaults = defaults or TransferDefaults()
        self.transport_factory = transport_factory
        self.evidence = evidence
        self.state = SessionState.UNINITIALIZED
        self._options: Optional[OptionSet] = None
        self._transport: Optional[ITransport] = None
        self._last_result: Optional[TransferResult] = None

    @classmethod
    def open(cls, url: Optional[str] = None, **kwargs) -> "Session":
        session = cls(**kwargs)
        session.init(url)
        return session

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __del__(self):
        # __init__ may not have run to completion
        if getattr(self, "state", None) is SessionState.READY:
            self.close()

    @property
    def last_result(self) -> Optional[TransferResult]:
        return self._last_result

    @property
    def transport(self) -> Optional[ITransport]:
        """The transport owned by a READY session, None otherwise."""
        return self._transport

    # === Lifecycle ===

    def init(self, url: Optional[str] = None) -> None:
        """Allocate options and a transport. Fails if the session is already READY."""
        if self.state is SessionState.READY:
            raise AlreadyInitializedError("Session is already initialized")

        options = OptionSet(self.defaults.as_option_values())
        if url is not None:
            options.set(Option.URL, url)

        self._options = options
        self._transport = self.transport_factory()
        self._last_result = None
        self.state = SessionState.READY
        logger.debug("Session initialized%s", f" for {url}" if url else "")

    def close(self) -> None:
        """Release the transport. Never raises; safe to call repeatedly."""
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                transport.close()
            except Exception as exc:
                logger.warning("Ignoring error while closing transport: %s", exc)
        self._options = None
        if self.state is SessionState.READY:
            self.state = SessionState.CLOSED
            logger.debug("Session closed")

    def reset(self) -> None:
        """Restore every option to its default; the transport stays open."""
        self._require_ready()
        self._options.reset()

    # === Options ===

    def set_option(self, key: OptionKey, value: Any) -> None:
        self._require_ready()
        self._options.set(key, value)

    def set_options(self, options: Mapping[OptionKey, Any]) -> None:
        """Apply all options or none of them."""
        self._require_ready()
        self._options.set_many(options)

    def get_option(self, key: OptionKey) -> Any:
        self._require_ready()
        return self._options.get(key)

    # === Transfer ===

    def execute(self) -> bytes:
        """
        Perform the configured transfer and return the response body. With
        RETURN_TRANSFER off the body goes to OUTPUT (stdout when unset) and
        an empty bytes object is returned.
        """
        self._require_ready()
        options = self._options.values
        try:
            result = self._transport.perform(options)
        except TransferError as exc:
            logger.warning("Transfer of %s failed: %s", options.url, exc)
            self._record_failure(options, exc)
            raise

        self._last_result = result
        logger.info("%s %s -> %s", result.effective_method, result.effective_url, result.status_code)

        if options.return_transfer:
            return result.body

        sink = options.output if options.output is not None else sys.stdout.buffer
        try:
            sink.write(result.body)
        except OSError as exc:
            error = OutputWriteError(
                f"Failed writing {len(result.body)} body bytes to output: {exc}", errno=exc.errno, original_exception=exc
            )
            logger.warning("%s", error)
            self._record_failure(options, error)
            raise error from exc
        return b""

    def get_information(self, key: Union[Info, str]) -> Any:
        result = self._require_result()
        return result.info(self._resolve_info(key))

    def get_information_array(self) -> Dict[str, Any]:
        return self._require_result().info_array()

    # === Escaping ===

    def escape(self, value: Union[str, bytes]) -> str:
        self._require_ready()
        return escaping.escape(value)

    def unescape(self, value: str) -> str:
        self._require_ready()
        return escaping.unescape(value)

    @staticmethod
    def error_to_string(code: Union[ErrorKind, int, str]) -> str:
        return error_to_string(code)

    # === Internals ===

    def _require_ready(self) -> None:
        if self.state is not SessionState.READY:
            raise NotInitializedError(f"Session is not initialized (state: {self.state.value})")

    def _require_result(self) -> TransferResult:
        self._require_ready()
        if self._last_result is None:
            raise NoTransferYetError("No transfer has completed on this session")
        return self._last_result

    @staticmethod
    def _resolve_info(key: Union[Info, str]) -> Info:
        if isinstance(key, Info):
            return key
        if isinstance(key, str):
            if key.upper() in Info.__members__:
                return Info[key.upper()]
            try:
                return Info(key.lower())
            except ValueError:
                pass
        raise InvalidOptionKeyError(f"Unknown transfer information key: {key!r}")

    def _record_failure(self, options, exc: TransferError) -> None:
        if self.evidence is None:
            return
        self.evidence.log_failed_transfer(
            method=options.method,
            url=options.url or "",
            error_kind=exc.kind.value,
            message=str(exc),
            headers=dict(options.headers),
            context={"follow_redirects": options.follow_redirects, "timeout": options.timeout},
            response_body=getattr(exc, "response_body", None),
        )
