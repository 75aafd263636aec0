from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import sys
import threading

import pytest

from labpilot import cli
from labpilot.models import ProcessEventResult, ProviderSession, Session, Tenant, WebhookEvent
from labpilot.session_store import FileSessionStore
from labpilot.shell import CommandError


@dataclass
class FakeProcessor:
    results: dict[int, ProcessEventResult] = field(default_factory=dict)
    seen: list[tuple[str, int | None, Tenant | None]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def process_event(self, event: WebhookEvent, tenant: Tenant | None = None) -> ProcessEventResult:
        with self._lock:
            self.seen.append((event.kind, event.target_iid, tenant))
        iid = event.target_iid or 0
        return self.results.get(iid, ProcessEventResult(status="processed", execution_time_ms=5))


def _issue_payload(iid: int, description: str = "@claude add a cache layer") -> dict[str, object]:
    return {
        "object_kind": "issue",
        "user": {"username": "alice"},
        "project": {
            "id": 42,
            "name": "demo",
            "web_url": "https://gitlab.example.com/g/demo",
            "default_branch": "main",
        },
        "object_attributes": {"iid": iid, "title": "Add cache", "description": description, "action": "open"},
    }


def _write_json(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _write_config(tmp_path: Path, *, sessions_enabled: bool = True) -> Path:
    config_path = tmp_path / "labpilot.toml"
    config_path.write_text(
        "\n".join(
            [
                "[runtime]",
                f'base_dir = "{tmp_path / "state"}"',
                "worker_count = 2",
                "",
                "[session]",
                f"enabled = {'true' if sessions_enabled else 'false'}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return config_path


def _run_main(monkeypatch: pytest.MonkeyPatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["labpilot", *argv])
    cli.main()


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_process = parser.parse_args(
        ["process", "a.json", "b.json", "--owner", "tenant-a", "--json", "--verbose"]
    )
    parsed_remove = parser.parse_args(
        ["sessions", "-v", "high", "remove", "--project", "42", "--iid", "5", "--provider", "codex"]
    )
    parsed_check = parser.parse_args(["check", "--config", "custom.toml"])

    assert parsed_process.command == "process"
    assert parsed_process.events == [Path("a.json"), Path("b.json")]
    assert parsed_process.owner == "tenant-a"
    assert parsed_process.json is True
    assert parsed_process.verbose == "low"
    assert parsed_remove.sessions_command == "remove"
    assert parsed_remove.verbose == "high"
    assert (parsed_remove.project, parsed_remove.iid, parsed_remove.provider) == (42, 5, "codex")
    assert parsed_check.config == Path("custom.toml")
    assert parsed_check.verbose is None


def test_build_parser_rejects_unknown_provider() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(
            ["sessions", "remove", "--project", "42", "--iid", "5", "--provider", "gemini"]
        )


def test_process_event_files_keeps_input_order(tmp_path: Path) -> None:
    processor = FakeProcessor(
        results={6: ProcessEventResult(status="ignored", execution_time_ms=1)}
    )
    paths = [
        _write_json(tmp_path / "first.json", _issue_payload(5)),
        _write_json(tmp_path / "second.json", _issue_payload(6, "no trigger")),
        tmp_path / "missing.json",
        _write_json(tmp_path / "list.json", [1, 2]),
        _write_json(tmp_path / "push.json", {"object_kind": "push", "project": {"id": 1}, "object_attributes": {}}),
    ]
    tenant = Tenant(user_id="tenant-a")

    outcomes = cli.process_event_files(processor, paths, tenant=tenant, worker_count=3)  # type: ignore[arg-type]

    assert [outcome.source for outcome in outcomes] == [str(path) for path in paths]
    assert [outcome.result.status for outcome in outcomes] == [
        "processed",
        "ignored",
        "error",
        "error",
        "error",
    ]
    assert outcomes[3].result.error == "webhook payload must be a JSON object"
    assert outcomes[4].result.error == "Unsupported webhook event kind: push"
    assert sorted(processor.seen, key=lambda item: item[1] or 0) == [
        ("issue", 5, tenant),
        ("issue", 6, tenant),
    ]


def test_main_exits_with_code_two_for_bad_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "labpilot.toml"
    config_path.write_text("[gitlab]\nhost = 'gitlab.example.com'\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        _run_main(monkeypatch, "check", "--config", str(config_path))

    assert excinfo.value.code == 2
    assert f"Failed to load config {config_path}" in capsys.readouterr().err


def test_main_process_prints_json_and_fails_on_errors(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path, sessions_enabled=False)
    processor = FakeProcessor(
        results={6: ProcessEventResult(status="error", execution_time_ms=3, error="boom")}
    )
    built: dict[str, object] = {}

    def fake_build_processor(config: object, sessions: object) -> FakeProcessor:
        built["sessions"] = sessions
        return processor

    monkeypatch.setattr(cli, "_build_processor", fake_build_processor)
    first = _write_json(tmp_path / "first.json", _issue_payload(5))
    second = _write_json(tmp_path / "second.json", _issue_payload(6))

    with pytest.raises(SystemExit) as excinfo:
        _run_main(
            monkeypatch,
            "process",
            str(first),
            str(second),
            "--config",
            str(config_path),
            "--owner",
            "tenant-a",
            "--json",
        )

    assert excinfo.value.code == 1
    assert built["sessions"] is None
    printed = json.loads(capsys.readouterr().out)
    assert printed == [
        {"source": str(first), "status": "processed", "execution_time_ms": 5, "error": None},
        {"source": str(second), "status": "error", "execution_time_ms": 3, "error": "boom"},
    ]
    assert {tenant for _, _, tenant in processor.seen} == {Tenant(user_id="tenant-a")}


def test_main_process_plain_output(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path, sessions_enabled=False)
    monkeypatch.setattr(cli, "_build_processor", lambda config, sessions: FakeProcessor())
    event_path = _write_json(tmp_path / "event.json", _issue_payload(5))

    _run_main(monkeypatch, "process", str(event_path), "--config", str(config_path))

    assert capsys.readouterr().out == f"{event_path}: status=processed execution_time_ms=5\n"


def _seed_sessions(tmp_path: Path) -> None:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    FileSessionStore(tmp_path / "state" / "sessions.json").persist(
        [
            Session(
                issue_key="42:5",
                project_id=42,
                issue_iid=5,
                created_at=now,
                last_used=now,
                last_provider="claude",
                provider_sessions={"claude": ProviderSession(session_id="sess-1", last_used=now)},
                branch_name="claude-20260501T120000-abc123",
                merge_request_url="https://gitlab.example.com/g/demo/-/merge_requests/10",
            )
        ]
    )


def test_sessions_list_and_stats(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    _seed_sessions(tmp_path)

    _run_main(monkeypatch, "sessions", "--config", str(config_path), "list")
    listed = capsys.readouterr().out
    _run_main(monkeypatch, "sessions", "--config", str(config_path), "list", "--json")
    listed_json = json.loads(capsys.readouterr().out)
    _run_main(monkeypatch, "sessions", "--config", str(config_path), "stats")
    stats = capsys.readouterr().out

    assert listed.startswith("42:5 provider=claude providers=claude last_used=")
    assert "branch=claude-20260501T120000-abc123" in listed
    assert "merge_request=https://gitlab.example.com/g/demo/-/merge_requests/10" in listed
    assert listed_json[0]["issue_key"] == "42:5"
    assert listed_json[0]["providers"] == ["claude"]
    assert "total_sessions=1\n" in stats
    assert "active_sessions=1\n" in stats


def test_sessions_list_empty(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    _run_main(monkeypatch, "sessions", "--config", str(config_path), "list")

    assert capsys.readouterr().out == "No sessions.\n"


def test_sessions_remove_and_clean(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    _seed_sessions(tmp_path)

    _run_main(monkeypatch, "sessions", "--config", str(config_path), "clean", "--max-age", "1d")
    _run_main(
        monkeypatch, "sessions", "--config", str(config_path), "remove", "--project", "42", "--iid", "5"
    )
    _run_main(
        monkeypatch, "sessions", "--config", str(config_path), "remove", "--project", "42", "--iid", "5"
    )

    assert capsys.readouterr().out.splitlines() == [
        "Removed 0 expired session(s).",
        "Removed session 42:5.",
        "No session found for 42:5.",
    ]
    stored = json.loads((tmp_path / "state" / "sessions.json").read_text(encoding="utf-8"))
    assert stored == []


def test_check_reports_unavailable_provider(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    def fake_run(cmd: list[str], **_: object) -> str:
        if cmd[0] == "codex":
            raise CommandError("codex: command not found")
        return "1.0.0\n"

    monkeypatch.setattr("labpilot.executor.run", fake_run)

    with pytest.raises(SystemExit) as excinfo:
        _run_main(monkeypatch, "check", "--config", str(config_path))

    assert excinfo.value.code == 1
    out = capsys.readouterr().out
    assert "claude: ok (claude)\n" in out
    assert "codex: unavailable (Codex CLI is not available: codex: command not found)\n" in out
    assert "default_executor=claude\n" in out
    assert "code_review_executor=codex\n" in out
    assert "sessions_enabled=True\n" in out


def test_sessions_list_survives_corrupt_store(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    store_path = tmp_path / "state" / "sessions.json"
    store_path.parent.mkdir(parents=True)
    store_path.write_text("{not json", encoding="utf-8")

    _run_main(monkeypatch, "sessions", "--config", str(config_path), "-v", "low", "list")

    captured = capsys.readouterr()
    assert captured.out == "No sessions.\n"
    assert "event=session_store_load_failed" in captured.err
