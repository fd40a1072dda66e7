# remibot

Utilities for the daemon that looks after a chat-bot agent: controlling the
agent's Docker container, checking and repairing conversation memory files,
keeping a local agent process alive, restarting the daemon in place, and
holding the management identity.

## Modules

- `remibot.commands` — the chat commands the daemon answers itself.
  `is_daemon_command(name)` tells whether a `/command` belongs to the daemon;
  `help_text()` is the `/help` reply. `diagnose_memory(data_dir)` reports, for
  every conversation under `<data_dir>/memory`, its short-, mid- and long-term
  memory; `repair_memory(data_dir)` drops leading messages from each
  `short_term.jsonl` until the first `user` or `system` message.
  `daemon_update_url(version)` builds a download URL from `DAEMON_UPDATE_URL`
  or `GITHUB_REPO`; `fetch_latest_github_version()` asks the release API for
  the latest tag; `version_text(current, latest)` and `truncate(text, max_chars)`
  format replies.
- `remibot.docker` — `DockerManager(container_name)` starts, stops, restarts,
  inspects (`status`, `is_running`), pulls the image of, reads `logs` from,
  lists bind mounts of (`list_mounts`) and recreates with new mounts
  (`recreate_with_mounts`) a single container, over the Docker socket
  (`DOCKER_HOST` if it is a `unix://` address, else `/var/run/docker.sock`) or
  a transport callable you pass in. Failures raise `DockerError`. Bind strings
  are handled by `parse_bind_string`, `merge_binds` and `VolumeMount`;
  `demux_logs` decodes a log stream.
- `remibot.supervisor` — `LocalAgentSupervisor(daemon_addr)` runs the
  `remi-cat-agent` program (found by `find_agent_bin()`: `AGENT_BIN`, or next
  to the running program) with `DAEMON_ADDR` and `REMI_BASH_MODE=local` set,
  and restarts it two seconds after it exits. `supervise()` runs forever unless
  `max_runs` is given.
- `remibot.restart` — `RestartHandle().spawn_restart(update_url)` optionally
  downloads a new binary with `download_and_replace` (checked against
  `<url>.sha256`), starts a new copy of the program and exits once the new
  process calls `signal_ready()`. If it fails or times out, `RestartError` is
  raised and the old process keeps running.
- `remibot.identity` — `MgmtIdentity.load_or_create(path)` loads or generates
  an X25519 private key, a 16-byte hex pairing token and the list of trusted
  admin public keys, stored in `mgmt_identity.json`. `pubkey_fingerprint()`
  is the hex SHA-256 of the public key; `is_trusted` and `pair` manage admin
  keys. Bad files raise `IdentityError`.
- `remibot.agent_files` — `read_agent_file` and `write_agent_file` touch only
  files in the data directory whose names pass `is_safe_filename`; other names
  raise `UnsafeFilenameError`.

## Examples

```python
from remibot.commands import is_daemon_command, truncate, version_text
from remibot.docker import parse_bind_string

is_daemon_command("restart")         # True
is_daemon_command("compact")         # False
truncate("abcdef", 3)                # 'abc… (truncated)'
version_text("0.1.0")                # 'remi-daemon **v0.1.0**'
parse_bind_string("/srv/data:/data:ro")
# VolumeMount(host_path='/srv/data', container_path='/data', read_only=True)
parse_bind_string("named-volume:/app/data")   # None
```

```python
from remibot.identity import MgmtIdentity

identity = MgmtIdentity.load_or_create("mgmt_identity.json")
print(identity.token, identity.pubkey_fingerprint())
```

## What it does not do

This package is a set of library functions, not a running daemon. It has no
command-line entry point, no chat gateway, no dispatcher that sends command
replies back to a chat, no management server or encrypted management
connection (only the identity it would use), and no agent-side tools or
secret redaction. Secret, user and volume storage are not included either.

## Requirements

Python 3.10 or later. Container control talks to the local Docker daemon;
self-restart (named FIFOs) and local supervision are meant for Linux hosts.