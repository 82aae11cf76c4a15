import io
import logging
from unittest.mock import MagicMock

import pytest

from curlkit.common.errors import (
    AlreadyInitializedError,
    ErrorKind,
    InvalidOptionKeyError,
    InvalidOptionValueError,
    NoTransferYetError,
    NotInitializedError,
    OutputWriteError,
    ProtocolViolationError,
    TimeoutExceededError,
    TooManyRedirectsError,
    TransportIOError,
)
from curlkit.config import TransferDefaults
from curlkit.http.options import Option
from curlkit.http.result import Info, TransferResult
from curlkit.session import Session, SessionState


class StubTransport:
    def __init__(self, result=None, exception=None):
        self.result = result
        self.exception = exception
        self.calls = []
        self.closed = 0

    def perform(self, options):
        self.calls.append(options)
        if self.exception:
            raise self.exception
        return self.result

    def close(self):
        self.closed += 1


def _result(body=b"payload"):
    return TransferResult(
        status_code=200,
        reason="OK",
        http_version="1.1",
        headers=[("Content-Type", "text/plain")],
        body=body,
        effective_url="http://example.test/",
    )


@pytest.mark.parametrize(
    "operation",
    [
        lambda s: s.set_option(Option.METHOD, "GET"),
        lambda s: s.set_options({Option.METHOD: "GET"}),
        lambda s: s.execute(),
        lambda s: s.reset(),
        lambda s: s.escape("a b"),
        lambda s: s.unescape("a%20b"),
        lambda s: s.get_information(Info.HTTP_CODE),
        lambda s: s.get_information_array(),
    ],
)
def test_operations_before_init_fail(operation):
    session = Session()
    with pytest.raises(NotInitializedError):
        operation(session)


def test_double_init_fails_and_reinit_after_close_works():
    session = Session()
    session.init("http://example.test/")
    with pytest.raises(AlreadyInitializedError):
        session.init()

    session.close()
    assert session.state is SessionState.CLOSED
    with pytest.raises(NotInitializedError):
        session.execute()

    session.init()
    assert session.state is SessionState.READY
    assert session.get_option(Option.URL) is None
    session.close()


def test_init_with_invalid_url_stays_uninitialized():
    session = Session()
    with pytest.raises(InvalidOptionValueError):
        session.init("ftp://example.test/")
    assert session.state is SessionState.UNINITIALIZED


def test_close_is_idempotent_and_releases_transport():
    stub = StubTransport()
    session = Session.open("http://example.test/", transport_factory=lambda: stub)

    session.close()
    session.close()

    assert stub.closed == 1


def test_close_swallows_transport_errors(caplog):
    stub = StubTransport()
    stub.close = MagicMock(side_effect=OSError("already gone"))
    session = Session.open(transport_factory=lambda: stub)

    with caplog.at_level(logging.WARNING):
        session.close()

    assert session.state is SessionState.CLOSED
    assert "already gone" in caplog.text


def test_context_manager_closes():
    stub = StubTransport(result=_result())
    with Session.open("http://example.test/", transport_factory=lambda: stub) as session:
        assert session.execute() == b"payload"
    assert stub.closed == 1
    assert session.state is SessionState.CLOSED


def test_defaults_flow_into_options():
    stub = StubTransport(result=_result())
    session = Session.open(
        "http://example.test/",
        defaults=TransferDefaults(follow_redirects=True, max_redirects=3),
        transport_factory=lambda: stub,
    )

    session.execute()

    sent = stub.calls[0]
    assert sent.url == "http://example.test/"
    assert sent.follow_redirects is True
    assert sent.max_redirects == 3
    session.close()


def test_set_options_is_atomic():
    session = Session.open("http://example.test/", transport_factory=StubTransport)

    with pytest.raises(InvalidOptionValueError):
        session.set_options({Option.METHOD: "POST", Option.TIMEOUT: "ten"})

    assert session.get_option(Option.METHOD) == "GET"
    assert session.get_option(Option.TIMEOUT) is None
    session.close()


def test_reset_restores_defaults_but_keeps_transport():
    stub = StubTransport()
    session = Session.open("http://example.test/", transport_factory=lambda: stub)
    session.set_options({Option.METHOD: "DELETE", Option.TIMEOUT: 4})

    session.reset()

    assert session.get_option(Option.METHOD) == "GET"
    assert session.get_option(Option.URL) is None
    assert stub.closed == 0
    session.close()


def test_information_requires_a_completed_transfer():
    stub = StubTransport(exception=TimeoutExceededError("slow"))
    session = Session.open("http://example.test/", transport_factory=lambda: stub)

    with pytest.raises(NoTransferYetError):
        session.get_information(Info.HTTP_CODE)
    with pytest.raises(TimeoutExceededError):
        session.execute()
    with pytest.raises(NoTransferYetError):
        session.get_information_array()
    session.close()


def test_information_lookup_by_member_or_name():
    stub = StubTransport(result=_result())
    session = Session.open("http://example.test/", transport_factory=lambda: stub)
    session.execute()

    assert session.get_information(Info.HTTP_CODE) == 200
    assert session.get_information("http_code") == 200
    assert session.get_information("CONTENT_TYPE") == "text/plain"
    assert session.get_information_array()["url"] == "http://example.test/"
    with pytest.raises(InvalidOptionKeyError):
        session.get_information("certinfo")
    session.close()


def test_return_transfer_off_writes_to_output():
    sink = io.BytesIO()
    stub = StubTransport(result=_result())
    session = Session.open("http://example.test/", transport_factory=lambda: stub)
    session.set_options({Option.RETURN_TRANSFER: False, Option.OUTPUT: sink})

    assert session.execute() == b""
    assert sink.getvalue() == b"payload"
    session.close()


def test_failed_transfer_is_recorded_as_evidence():
    evidence = MagicMock()
    stub = StubTransport(exception=TooManyRedirectsError("loop"))
    session = Session.open("http://example.test/", transport_factory=lambda: stub, evidence=evidence)

    with pytest.raises(TooManyRedirectsError):
        session.execute()

    evidence.log_failed_transfer.assert_called_once()
    kwargs = evidence.log_failed_transfer.call_args.kwargs
    assert kwargs["error_kind"] == "TooManyRedirects"
    assert kwargs["url"] == "http://example.test/"
    session.close()


class BrokenSink:
    def write(self, data):
        raise OSError(28, "No space left on device")


def test_failed_output_write_is_a_transport_io_error():
    evidence = MagicMock()
    stub = StubTransport(result=_result())
    session = Session.open("http://example.test/", transport_factory=lambda: stub, evidence=evidence)
    session.set_options({Option.RETURN_TRANSFER: False, Option.OUTPUT: BrokenSink()})

    with pytest.raises(TransportIOError) as err:
        session.execute()

    assert isinstance(err.value, OutputWriteError)
    assert err.value.kind is ErrorKind.TRANSPORT_IO_ERROR
    assert err.value.errno == 28
    assert isinstance(err.value.original_exception, OSError)
    assert evidence.log_failed_transfer.call_args.kwargs["error_kind"] == "TransportIOError"
    assert session.get_information(Info.HTTP_CODE) == 200
    session.close()


def test_transport_is_exposed_while_ready():
    stub = StubTransport()
    session = Session(transport_factory=lambda: stub)
    assert session.transport is None

    session.init()
    assert session.transport is stub

    session.close()
    assert session.transport is None


def test_escape_round_trip():
    session = Session.open(transport_factory=StubTransport)
    text = "key=a value&other=ü/~"
    assert session.unescape(session.escape(text)) == text
    session.close()


def test_error_to_string_is_static():
    assert Session.error_to_string(47) == "Number of redirects hit maximum amount"


# === Against a live server ===


def test_execute_returns_body_and_status(http_server):
    with Session.open(f"{http_server.base_url}/") as session:
        session.set_options({Option.URL: f"{http_server.base_url}/ok", Option.METHOD: "GET"})

        assert session.execute() == b"ok"
        assert session.get_information(Info.HTTP_CODE) == 200
        assert session.get_information(Info.EFFECTIVE_URL) == f"{http_server.base_url}/ok"


def test_redirect_updates_effective_url(http_server, session):
    session.set_options({Option.URL: f"{http_server.base_url}/redirect", Option.FOLLOW_REDIRECTS: True})

    assert session.execute() == b"next"
    assert session.get_information(Info.EFFECTIVE_URL) == f"{http_server.base_url}/next"
    assert session.get_information(Info.REDIRECT_COUNT) == 1


def test_twenty_one_redirects_exceed_default_limit(http_server, session):
    session.set_options({Option.URL: f"{http_server.base_url}/chain/21", Option.FOLLOW_REDIRECTS: True})

    with pytest.raises(TooManyRedirectsError):
        session.execute()


def test_session_survives_a_failed_transfer(http_server, raw_server, session):
    session.set_options({Option.URL: raw_server(b"garbage\r\n\r\n")})
    with pytest.raises(ProtocolViolationError):
        session.execute()

    session.set_option(Option.URL, f"{http_server.base_url}/ok")
    assert session.execute() == b"ok"


def test_truncated_body_sample_reaches_evidence(raw_server):
    evidence = MagicMock()
    url = raw_server(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nabc")
    session = Session.open(url, defaults=TransferDefaults(timeout=10.0), evidence=evidence)

    with pytest.raises(ProtocolViolationError):
        session.execute()

    kwargs = evidence.log_failed_transfer.call_args.kwargs
    assert kwargs["error_kind"] == "ProtocolViolation"
    assert kwargs["response_body"] == b"abc"
    session.close()
