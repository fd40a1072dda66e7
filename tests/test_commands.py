import json

import pytest
import requests
import responses

from remibot.commands import (
    daemon_update_url,
    diagnose_memory,
    fetch_latest_github_version,
    help_text,
    is_daemon_command,
    repair_memory,
    truncate,
    version_text,
)


def _jsonl(*roles):
    return "".join(json.dumps({"role": role, "content": "x"}) + "\n" for role in roles)


def _thread(tmp_path, name):
    thread = tmp_path / "memory" / name
    thread.mkdir(parents=True)
    return thread


@pytest.mark.parametrize("name", ["ban", "help", "restart-all", "secrets", "logs"])
def test_daemon_commands_recognised(name):
    assert is_daemon_command(name) is True


@pytest.mark.parametrize("name", ["compact", "", "HELP", "reset"])
def test_other_commands_not_daemon(name):
    assert is_daemon_command(name) is False


def test_help_text_content():
    text = help_text()
    assert text.startswith("**remi-cat 指令列表**")
    assert "`/secrets delete KEY` — 删除 Secret" in text
    assert text.endswith("`/compact` — 立即将短期记忆压缩为中期记忆")


def test_diagnose_without_memory_dir(tmp_path):
    assert diagnose_memory(tmp_path) == "📂 记忆目录不存在，尚无会话记录。"


def test_diagnose_empty_memory_dir(tmp_path):
    (tmp_path / "memory").mkdir()
    assert diagnose_memory(tmp_path) == "🔍 **记忆诊断**\n\n（无会话记录）"


def test_diagnose_healthy_thread(tmp_path):
    thread = _thread(tmp_path, "chat1")
    (thread / "short_term.jsonl").write_text(_jsonl("user", "assistant"), encoding="utf-8")
    (thread / "mid_term").mkdir()
    (thread / "mid_term" / "index.json").write_text(
        json.dumps({"entries": [1, 2, 3]}), encoding="utf-8"
    )
    report = diagnose_memory(tmp_path)
    assert "**chat1**" in report
    assert "  短期记忆: 2 条（首条 role: user）✅" in report
    assert "  中期记忆: 3 块" in report
    assert "  长期记忆: 无" in report
    assert report == report.rstrip()


def test_diagnose_corrupt_head(tmp_path):
    thread = _thread(tmp_path, "chat2")
    (thread / "short_term.jsonl").write_text(_jsonl("tool", "user"), encoding="utf-8")
    report = diagnose_memory(tmp_path)
    assert "首条 role: tool" in report
    assert "⚠️ 头部损坏" in report


def test_diagnose_bad_index_counts_zero(tmp_path):
    thread = _thread(tmp_path, "chat3")
    (thread / "long_term").mkdir()
    (thread / "long_term" / "index.json").write_text("not json", encoding="utf-8")
    report = diagnose_memory(tmp_path)
    assert "  短期记忆: 无" in report
    assert "  长期记忆: 0 块" in report


def test_diagnose_empty_short_term(tmp_path):
    thread = _thread(tmp_path, "chat4")
    (thread / "short_term.jsonl").write_text("\n\n", encoding="utf-8")
    assert "（首条 role: empty）✅" in diagnose_memory(tmp_path)


def test_repair_without_memory_dir(tmp_path):
    assert repair_memory(tmp_path) == "📂 记忆目录不存在，无需修复。"


def test_repair_strips_orphaned_head(tmp_path):
    thread = _thread(tmp_path, "chat1")
    short = thread / "short_term.jsonl"
    short.write_text(_jsonl("assistant", "tool", "user", "assistant"), encoding="utf-8")
    result = repair_memory(tmp_path)
    assert result == "🔧 修复完成：1/1 个会话的短期记忆头部损坏已清除。"
    assert short.read_text(encoding="utf-8") == _jsonl("user", "assistant")
    assert "✅" in diagnose_memory(tmp_path)


def test_repair_healthy_threads_untouched(tmp_path):
    thread = _thread(tmp_path, "chat1")
    _thread(tmp_path, "chat2")
    original = _jsonl("system", "user")
    (thread / "short_term.jsonl").write_text(original, encoding="utf-8")
    assert repair_memory(tmp_path) == "✅ 检查了 2 个会话，记忆状态正常，无需修复。"
    assert (thread / "short_term.jsonl").read_text(encoding="utf-8") == original


def test_repair_all_orphaned_empties_file(tmp_path):
    thread = _thread(tmp_path, "chat1")
    short = thread / "short_term.jsonl"
    short.write_text(_jsonl("assistant", "tool"), encoding="utf-8")
    repair_memory(tmp_path)
    assert short.read_text(encoding="utf-8") == ""


def test_update_url_explicit(monkeypatch):
    monkeypatch.setenv("DAEMON_UPDATE_URL", "https://example.com/daemon")
    monkeypatch.setenv("GITHUB_REPO", "owner/repo")
    assert daemon_update_url("v1.2.3") == "https://example.com/daemon"


def test_update_url_from_repo(monkeypatch):
    monkeypatch.delenv("DAEMON_UPDATE_URL", raising=False)
    monkeypatch.setenv("GITHUB_REPO", "owner/repo")
    assert daemon_update_url(None) == (
        "https://github.com/owner/repo/releases/latest/download/remi-daemon-linux-x86_64"
    )
    assert daemon_update_url("v1.2.3") == (
        "https://github.com/owner/repo/releases/download/v1.2.3/remi-daemon-linux-x86_64"
    )


def test_update_url_unconfigured(monkeypatch):
    monkeypatch.setenv("DAEMON_UPDATE_URL", "")
    monkeypatch.delenv("GITHUB_REPO", raising=False)
    assert daemon_update_url(None) is None


def test_fetch_latest_without_repo(monkeypatch):
    monkeypatch.delenv("GITHUB_REPO", raising=False)
    assert fetch_latest_github_version() is None


def test_fetch_latest_strips_v(monkeypatch):
    monkeypatch.setenv("GITHUB_REPO", "owner/repo")
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            "https://api.github.com/repos/owner/repo/releases/latest",
            json={"tag_name": "v0.2.0"},
        )
        assert fetch_latest_github_version() == "0.2.0"
        assert rsps.calls[0].request.headers["User-Agent"] == "remi-daemon"


def test_fetch_latest_http_error(monkeypatch):
    monkeypatch.setenv("GITHUB_REPO", "owner/repo")
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            "https://api.github.com/repos/owner/repo/releases/latest",
            status=404,
        )
        assert fetch_latest_github_version() is None


def test_fetch_latest_connection_error(monkeypatch):
    monkeypatch.setenv("GITHUB_REPO", "owner/repo")
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            "https://api.github.com/repos/owner/repo/releases/latest",
            body=requests.ConnectionError("down"),
        )
        assert fetch_latest_github_version() is None


def test_version_text_variants():
    assert version_text("1.0.0") == "remi-daemon **v1.0.0**"
    assert version_text("1.0.0", "1.0.0") == "remi-daemon **v1.0.0**（已是最新）"
    assert version_text("1.0.0", "2.0.0") == (
        "remi-daemon **v1.0.0**（最新可用: **v2.0.0**，可运行 `/update` 升级）"
    )


def test_truncate_short_unchanged():
    assert truncate("abc", 3) == "abc"


def test_truncate_long_ascii():
    assert truncate("abcdef", 3) == "abc… (truncated)"


def test_truncate_respects_char_boundary():
    text = "你好世界"
    result = truncate(text, 2)
    assert result == "… (truncated)"
    prefix = truncate(text, 3).removesuffix("… (truncated)")
    assert text.startswith(prefix)
    assert len(prefix.encode("utf-8")) <= 3