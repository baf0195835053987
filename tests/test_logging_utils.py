import json
import logging

from protokollkoppler.config import LoggingConfig
from protokollkoppler.logging_utils import JsonLogFormatter, TranscodeLogger, setup_logging


class _RecordingLogger:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def info(self, msg: str, *args: object) -> None:
        self.lines.append(msg % args)


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="INFO", json=False))

    assert logging.getLogger().level == logging.INFO
    assert noisy.level == logging.INFO
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_forces_watchdog_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("watchdog.observers.inotify_buffer")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="WARNING", json=False))

    assert noisy.level == logging.WARNING
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_installs_json_formatter() -> None:
    setup_logging(LoggingConfig(level="DEBUG", json=True))

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, JsonLogFormatter)

    record = logging.LogRecord("protokollkoppler.app", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["level"] == "INFO"
    assert payload["logger"] == "protokollkoppler.app"
    assert payload["message"] == "hello world"


def test_transcode_logger_milestones_and_bounded_payloads() -> None:
    recorder = _RecordingLogger()
    log = TranscodeLogger(LoggingConfig(), logger=recorder, max_len=10)  # type: ignore[arg-type]

    log.log("Backend Payload Request (Transformed)", {"model": "claude-sonnet-4-5"})
    log.log("stream finished")
    log.log_debug("Backend Stream (Raw)", "data: ...")

    assert log.debug_enabled is False
    assert recorder.lines[0].startswith("Backend Payload Request (Transformed): {\"model\":")
    assert "<truncated" in recorder.lines[0]
    assert recorder.lines[1] == "stream finished"
    assert len(recorder.lines) == 2


def test_transcode_logger_debug_output_when_enabled() -> None:
    recorder = _RecordingLogger()
    log = TranscodeLogger(LoggingConfig(debug_request_response=True), logger=recorder)  # type: ignore[arg-type]

    log.log_debug("Backend Stream (Raw)", "data: {}")
    log.log_debug("marker")

    assert recorder.lines == ["[debug] Backend Stream (Raw): data: {}", "[debug] marker"]
