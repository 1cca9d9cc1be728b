from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from reloader.src.__main__ import (
    JSONFormatter,
    TextFormatter,
    main,
    redact_sensitive_text,
    setup_logging,
)
from reloader.src.config import ConfigError, ReloaderConfig

_ENV_VARS = ("VERBOSE", "MATCH_LABEL", "JSON_LOG", "KUBECONFIG", "HEALTH_PORT", "RETRY_ATTEMPTS")


@pytest.fixture(autouse=True)
def _isolate_root_logger(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    handlers = list(logging.root.handlers)
    level = logging.root.level
    kube_level = logging.getLogger("kubernetes").level
    yield
    logging.root.handlers = handlers
    logging.root.setLevel(level)
    logging.getLogger("kubernetes").setLevel(kube_level)


def _make_record(
    msg: str = "test message",
    level: int = logging.INFO,
    exc_info: object = None,
) -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=7,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(_make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "caller" not in parsed
        assert "error" not in parsed

    def test_format_reports_caller_when_requested(self) -> None:
        parsed = json.loads(JSONFormatter(report_caller=True).format(_make_record()))

        assert parsed["caller"] == "test.py:7"

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(_make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = _make_record(
            msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_text_formatter_redacts_output() -> None:
    formatter = TextFormatter("%(levelname)s %(message)s")

    output = formatter.format(_make_record(msg="connecting with api_key=s3cr3t"))

    assert output == "INFO connecting with api_key=[REDACTED]"


def test_redaction_leaves_plain_text_alone() -> None:
    assert redact_sensitive_text("going to rollout mlops.cnvrg.io=bar") == (
        "going to rollout mlops.cnvrg.io=bar"
    )


def test_setup_logging_selects_formatter_and_level() -> None:
    setup_logging(ReloaderConfig(json_log=True, verbose=True))

    (handler,) = logging.root.handlers
    assert isinstance(handler.formatter, JSONFormatter)
    assert handler.formatter.report_caller is True
    assert logging.root.level == logging.DEBUG
    assert logging.getLogger("kubernetes").level == logging.INFO

    setup_logging(ReloaderConfig())

    (handler,) = logging.root.handlers
    assert isinstance(handler.formatter, TextFormatter)
    assert logging.root.level == logging.INFO


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _fake_reloader(self) -> MagicMock:
        reloader = MagicMock()
        reloader.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        reloader.run_forever.side_effect = fake_run_forever
        return reloader

    def test_main_wires_components(self) -> None:
        reloader = self._fake_reloader()
        core_api, apps_api = SimpleNamespace(), SimpleNamespace()

        with (
            patch("reloader.src.__main__.load_kube_configuration") as mock_load,
            patch("reloader.src.__main__.build_clients", return_value=(core_api, apps_api)),
            patch(
                "reloader.src.__main__.build_reloader", return_value=reloader
            ) as mock_build,
            patch("reloader.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main(["--match-label", "example.com/reload", "--kubeconfig", "/tmp/kc"])

        mock_load.assert_called_once_with("/tmp/kc")
        build_kwargs = mock_build.call_args.kwargs
        assert build_kwargs["core_api"] is core_api
        assert build_kwargs["apps_api"] is apps_api
        assert build_kwargs["settings"].match_label == "example.com/reload"
        assert mock_health.call_args.kwargs == {"ready": reloader.ready, "port": 8080}
        reloader.run_forever.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_skips_health_server_when_port_is_zero(self) -> None:
        reloader = self._fake_reloader()

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.build_reloader", return_value=reloader),
            patch("reloader.src.__main__.start_health_server") as mock_health,
        ):
            main(["--health-port", "0"])

        mock_health.assert_not_called()
        reloader.run_forever.assert_called_once()

    def test_main_registers_signal_handlers(self) -> None:
        reloader = self._fake_reloader()
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.build_reloader", return_value=reloader),
            patch("reloader.src.__main__.start_health_server", return_value=MagicMock()),
            patch("reloader.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main([])

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_exits_when_credentials_cannot_be_loaded(self) -> None:
        with (
            patch(
                "reloader.src.__main__.load_kube_configuration",
                side_effect=ConfigError("no kubeconfig and not in cluster"),
            ),
            patch("reloader.src.__main__.build_clients") as mock_clients,
            pytest.raises(SystemExit) as excinfo,
        ):
            main([])

        assert excinfo.value.code == 1
        mock_clients.assert_not_called()

    def test_main_rejects_invalid_flag_before_touching_cluster(self) -> None:
        with (
            patch("reloader.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(SystemExit) as excinfo,
        ):
            main(["--retry-attempts", "0"])

        assert excinfo.value.code == 2
        mock_load.assert_not_called()
