from __future__ import annotations

from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from labpilot import observability
from labpilot.observability import configure_logging, log_event, log_warning_event


@pytest.fixture(autouse=True)
def restore_labpilot_logger_state() -> None:
    logger = logging.getLogger("labpilot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_cli_default_verbosity_is_silent(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=None)

    log_event(logging.getLogger("labpilot.event_processor"), "event_processed", kind="note")
    log_warning_event(logging.getLogger("labpilot.gitlab_gateway"), "gitlab_note_failed", project_id=42)

    logger = logging.getLogger("labpilot")
    assert logger.propagate is False
    assert [type(handler) for handler in logger.handlers] == [logging.NullHandler]
    assert capsys.readouterr().err == ""


def test_reconfiguring_replaces_handlers(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    configure_logging(verbose="high")

    logger = logging.getLogger("labpilot")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "[%(threadName)s]" in handler.formatter._fmt


def test_low_mode_keeps_event_milestones_and_warnings(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    processor_logger = logging.getLogger("labpilot.event_processor")

    log_event(processor_logger, "instruction_extracted", provider="claude", scenario="issue-session")
    log_event(processor_logger, "ai_dispatch", action="session-execution")
    log_event(logging.getLogger("labpilot.session_manager"), "session_stored", issue_key="42:5")
    log_event(processor_logger, "event_processed", kind="note", execution_time_ms=12)
    log_warning_event(processor_logger, "discussion_reply_failed", discussion_id="d1")
    processor_logger.info("event=event_processed smuggled=true")

    stderr = capsys.readouterr().err
    assert "event=instruction_extracted provider=claude scenario=issue-session" in stderr
    assert "event=event_processed execution_time_ms=12 kind=note" in stderr
    assert "event=discussion_reply_failed discussion_id=d1" in stderr
    assert "event=ai_dispatch" not in stderr
    assert "event=session_stored" not in stderr
    assert "smuggled" not in stderr


def test_state_dir_receives_utc_daily_log(tmp_path: Path) -> None:
    configure_logging(verbose="low", state_dir=tmp_path)

    log_event(logging.getLogger("labpilot.gitlab_gateway"), "merge_request_created", iid=10)
    log_event(logging.getLogger("labpilot.workspace"), "git_clone", project_id=42)

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    text = (tmp_path / "logs" / f"{date_key}.log").read_text(encoding="utf-8")
    assert "labpilot.gitlab_gateway" in text
    assert "event=merge_request_created iid=10" in text
    assert "git_clone" not in text


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_daily_file_handler_routes_write_errors_to_handle_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=tmp_path)
    failed: list[logging.LogRecord] = []

    def broken_stream() -> io.StringIO:
        raise OSError("read-only file system")

    monkeypatch.setattr(handler, "_stream_for_current_date", broken_stream)
    monkeypatch.setattr(handler, "handleError", failed.append)

    record = logging.LogRecord(
        name="labpilot.event_processor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=event_processed kind=issue",
        args=(),
        exc_info=None,
    )
    handler.emit(record)

    assert failed == [record]
    assert not (tmp_path / "logs").exists()


def test_event_fields_are_sorted_and_normalized() -> None:
    logger = logging.getLogger("labpilot.tests.fields")
    stream = io.StringIO()
    logger.handlers = [logging.StreamHandler(stream)]
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "instruction_extracted",
        command="fix\nthe   flaky test",
        spec_kit_command=None,
        iid=5,
        retry=False,
        context="   ",
        full_context="x" * 121,
        changes=("app.py",),
        branch="a=b",
    )

    message = stream.getvalue().strip()
    logger.handlers.clear()
    assert message.split(" ", 1)[0] == "event=instruction_extracted"
    assert message.index("branch=") < message.index("command=") < message.index("iid=")
    assert 'command="fix the flaky test"' in message
    assert "spec_kit_command=null" in message
    assert "iid=5" in message
    assert "retry=false" in message
    assert "context=<empty>" in message
    assert "changes=<tuple>" in message
    assert 'branch="a=b"' in message
    assert f"full_context={'x' * 120}..." in message


def test_log_warning_event_uses_warning_level() -> None:
    logger = logging.getLogger("labpilot.tests.warning")
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_warning_event(logger, "gitlab_note_failed", project_id=3)

    logger.handlers.clear()
    assert stream.getvalue().strip() == "WARNING event=gitlab_note_failed project_id=3"
