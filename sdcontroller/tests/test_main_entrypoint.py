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

from sdcontroller.src.__main__ import JSONFormatter, main, redact_sensitive_text
from sdcontroller.src.dispatcher import LoggingDispatcher
from sdcontroller.src.errors import CacheSyncError, ConfigError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_redaction_leaves_ordinary_text_alone(self) -> None:
        text = "Add selectivedeployment: tenant/sd-a"

        assert redact_sensitive_text(text) == text


@pytest.fixture
def fake_engine() -> MagicMock:
    engine = MagicMock()
    engine.ready = threading.Event()

    # run() returns as soon as a stop is requested; the test requests it right away.
    def fake_run(stop_event: threading.Event | None = None) -> None:
        if stop_event is not None:
            stop_event.set()

    engine.run.side_effect = fake_run
    return engine


@pytest.fixture
def wiring(fake_engine: MagicMock) -> Iterator[SimpleNamespace]:
    core, apps, custom = SimpleNamespace(), SimpleNamespace(), SimpleNamespace()
    with (
        patch("sdcontroller.src.__main__.load_kube_configuration") as mock_kubeconfig,
        patch("sdcontroller.src.__main__.build_clients", return_value=(core, apps, custom)),
        patch(
            "sdcontroller.src.__main__.ReconciliationEngine", return_value=fake_engine
        ) as mock_engine_cls,
        patch("sdcontroller.src.__main__.start_health_server") as mock_health,
        patch("sdcontroller.src.__main__.signal.signal") as mock_signal,
    ):
        mock_health.return_value = MagicMock()
        yield SimpleNamespace(
            clients=(core, apps, custom),
            kubeconfig=mock_kubeconfig,
            engine_cls=mock_engine_cls,
            health=mock_health,
            signal=mock_signal,
        )


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_engine_and_health_server(
        self,
        monkeypatch: pytest.MonkeyPatch,
        fake_engine: MagicMock,
        wiring: SimpleNamespace,
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9100")
        monkeypatch.delenv("DISPATCHER", raising=False)

        main()

        wiring.kubeconfig.assert_called_once()
        engine_kwargs = wiring.engine_cls.call_args.kwargs
        assert (engine_kwargs["core_api"], engine_kwargs["apps_api"], engine_kwargs["custom_api"]) == (
            wiring.clients
        )
        assert isinstance(engine_kwargs["dispatcher"], LoggingDispatcher)
        assert engine_kwargs["config"].health_port == 9100

        health_kwargs = wiring.health.call_args.kwargs
        assert health_kwargs["ready"] is fake_engine.ready
        assert health_kwargs["port"] == 9100
        assert health_kwargs["cache_status"] == fake_engine.cache_status

        fake_engine.run.assert_called_once()
        wiring.health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(
        self, monkeypatch: pytest.MonkeyPatch, wiring: SimpleNamespace
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        main()

        registered = [call.args[0] for call in wiring.signal.call_args_list]
        assert signal.SIGTERM in registered
        assert signal.SIGINT in registered

    def test_signal_handler_sets_the_stop_event(
        self,
        monkeypatch: pytest.MonkeyPatch,
        fake_engine: MagicMock,
        wiring: SimpleNamespace,
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        seen: list[bool] = []

        def fake_run(stop_event: threading.Event | None = None) -> None:
            assert stop_event is not None
            handler = wiring.signal.call_args_list[0].args[1]
            handler(signal.SIGTERM, None)
            seen.append(stop_event.is_set())

        fake_engine.run.side_effect = fake_run

        main()

        assert seen == [True]

    def test_main_exits_non_zero_when_caches_never_sync(
        self,
        monkeypatch: pytest.MonkeyPatch,
        fake_engine: MagicMock,
        wiring: SimpleNamespace,
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        fake_engine.run.side_effect = CacheSyncError("error syncing cache: nodes")

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        wiring.health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(
        self, monkeypatch: pytest.MonkeyPatch, wiring: SimpleNamespace
    ) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"):
            main()

        wiring.kubeconfig.assert_not_called()

    def test_main_rejects_invalid_dispatcher(
        self, monkeypatch: pytest.MonkeyPatch, wiring: SimpleNamespace
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("DISPATCHER", "not-a-factory-path")

        with pytest.raises(ConfigError, match="DISPATCHER"):
            main()

        wiring.engine_cls.assert_not_called()
