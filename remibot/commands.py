"""Commands the daemon answers itself, and the helpers behind them."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import requests

log = logging.getLogger(__name__)

DAEMON_COMMANDS = frozenset(
    {
        "ban",
        "unban",
        "help",
        "diagnose",
        "repair",
        "start",
        "stop",
        "restart",
        "restart-all",
        "update",
        "status",
        "logs",
        "version",
        "secrets",
    }
)

RELEASE_ASSET = "remi-daemon-linux-x86_64"
GITHUB_TIMEOUT_SECONDS = 8

_HELP_TEXT = """**remi-cat 指令列表**

**系统指令（由 Daemon 处理，不经过 AI）：**
`/ban <uuid|feishu:open_id|@用户>` — 拉黑用户
`/unban <uuid|feishu:open_id|@用户>` — 解除拉黑
`/help` — 显示此帮助
`/diagnose` — 诊断记忆文件健康状态
`/repair` — 修复损坏的短期记忆
`/status` — 查看 Agent 容器状态
`/start` / `/stop` / `/restart` — 管理 Agent 容器
`/restart-all` — 重启 Agent 容器 + Daemon 自身
`/update` — 更新镜像并重启
`/logs [N]` — 查看 Agent 最近 N 条日志（默认 50）
`/version` — 查看 Daemon 版本
`/secrets` — 管理 Secret（可交互卡片）
`/secrets set KEY VALUE` — 直接设置 Secret
`/secrets delete KEY` — 删除 Secret

**会话指令（由 Agent 处理，不调用 LLM）：**
`/compact` — 立即将短期记忆压缩为中期记忆"""


def is_daemon_command(name: str) -> bool:
    """Whether ``name`` is handled by the daemon rather than the agent."""
    return name in DAEMON_COMMANDS


def help_text() -> str:
    """The help message listing every command."""
    return _HELP_TEXT


def _lines(text: str) -> list[str]:
    return [line.removesuffix("\r") for line in text.split("\n")]


def _non_blank(text: str) -> list[str]:
    return [line for line in _lines(text) if line.strip()]


def _parse(line: str) -> Any:
    try:
        return json.loads(line)
    except ValueError:
        return None


def _role(value: Any) -> str | None:
    if isinstance(value, dict):
        role = value.get("role")
        if isinstance(role, str):
            return role
    return None


def _read_text_or_empty(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def _index_entries(path: Path) -> int:
    value = _parse(_read_text_or_empty(path))
    if isinstance(value, dict) and isinstance(value.get("entries"), list):
        return len(value["entries"])
    return 0


def _thread_dirs(memory_dir: Path) -> list[Path]:
    return sorted(entry for entry in memory_dir.iterdir() if entry.is_dir())


def _describe_thread(thread: Path) -> str:
    out = [f"**{thread.name}**\n"]

    short_path = thread / "short_term.jsonl"
    if short_path.exists():
        text = _read_text_or_empty(short_path)
        values = [
            value
            for value in (_parse(line) for line in _non_blank(text))
            if value is not None
        ]
        count = len(values)
        first_role = (_role(values[0]) if values else None) or "empty"
        healthy = count == 0 or first_role in ("user", "system")
        health = "✅" if healthy else "⚠️ 头部损坏"
        out.append(f"  短期记忆: {count} 条（首条 role: {first_role}）{health}\n")
    else:
        out.append("  短期记忆: 无\n")

    for label, sub in (("中期记忆", "mid_term"), ("长期记忆", "long_term")):
        index = thread / sub / "index.json"
        if index.exists():
            out.append(f"  {label}: {_index_entries(index)} 块\n")
        else:
            out.append(f"  {label}: 无\n")

    out.append("\n")
    return "".join(out)


def diagnose_memory(data_dir: str | Path) -> str:
    """Report the health of each conversation's memory files."""
    memory_dir = Path(data_dir) / "memory"
    if not memory_dir.exists():
        return "📂 记忆目录不存在，尚无会话记录。"
    threads = _thread_dirs(memory_dir)
    output = "🔍 **记忆诊断**\n\n" + "".join(_describe_thread(t) for t in threads)
    if not threads:
        output += "（无会话记录）"
    return output.rstrip()


def _starts_conversation(line: str) -> bool:
    return _role(_parse(line)) in ("user", "system")


def repair_memory(data_dir: str | Path) -> str:
    """Drop leading non-user/system messages from every short-term memory file."""
    memory_dir = Path(data_dir) / "memory"
    if not memory_dir.exists():
        return "📂 记忆目录不存在，无需修复。"

    threads = _thread_dirs(memory_dir)
    repaired = 0
    for thread in threads:
        short_path = thread / "short_term.jsonl"
        if not short_path.exists():
            continue
        lines = _non_blank(short_path.read_text(encoding="utf-8"))
        start = next(
            (i for i, line in enumerate(lines) if _starts_conversation(line)), len(lines)
        )
        if start > 0:
            short_path.write_text(
                "".join(f"{line}\n" for line in lines[start:]), encoding="utf-8"
            )
            repaired += 1

    total = len(threads)
    if repaired == 0:
        return f"✅ 检查了 {total} 个会话，记忆状态正常，无需修复。"
    return f"🔧 修复完成：{repaired}/{total} 个会话的短期记忆头部损坏已清除。"


def daemon_update_url(version: str | None = None) -> str | None:
    """Download URL for the daemon binary, or None if none is configured."""
    url = os.environ.get("DAEMON_UPDATE_URL", "")
    if url:
        return url
    repo = os.environ.get("GITHUB_REPO", "")
    if repo:
        if version is not None:
            return f"https://github.com/{repo}/releases/download/{version}/{RELEASE_ASSET}"
        return f"https://github.com/{repo}/releases/latest/download/{RELEASE_ASSET}"
    return None


def fetch_latest_github_version() -> str | None:
    """Latest release tag without its leading ``v``; None if unknown."""
    repo = os.environ.get("GITHUB_REPO", "")
    if not repo:
        return None
    url = f"https://api.github.com/repos/{repo}/releases/latest"
    try:
        response = requests.get(
            url,
            headers={
                "User-Agent": "remi-daemon",
                "Accept": "application/vnd.github+json",
            },
            timeout=GITHUB_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        log.debug("latest version lookup failed: %s", exc)
        return None
    tag = data.get("tag_name") if isinstance(data, dict) else None
    if not isinstance(tag, str):
        return None
    return tag.lstrip("v")


def version_text(current: str, latest: str | None = None) -> str:
    """Reply for ``/version`` given the running and latest known versions."""
    if latest is None:
        return f"remi-daemon **v{current}**"
    if latest == current:
        return f"remi-daemon **v{current}**（已是最新）"
    return f"remi-daemon **v{current}**（最新可用: **v{latest}**，可运行 `/update` 升级）"


def truncate(text: str, max_chars: int) -> str:
    """Cut long text to at most ``max_chars`` UTF-8 bytes and mark it truncated."""
    if len(text) <= max_chars:
        return text
    head = text.encode("utf-8")[:max_chars].decode("utf-8", errors="ignore")
    return f"{head}… (truncated)"