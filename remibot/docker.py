"""Manage the agent's Docker container through the Docker Engine API."""

from __future__ import annotations

import http.client
import json
import logging
import os
import socket
import struct
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote, urlencode

log = logging.getLogger(__name__)

DEFAULT_SOCKET = "/var/run/docker.sock"
STOP_TIMEOUT_SECONDS = 10

Transport = Callable[
    [str, str, Optional[Mapping[str, str]], Optional[bytes]], "tuple[int, bytes]"
]


@dataclass(frozen=True)
class VolumeMount:
    """A host-path bind mount of the agent container."""

    host_path: str
    container_path: str
    read_only: bool = False

    def to_bind(self) -> str:
        """Render as a Docker bind string ``host:container[:ro]``."""
        base = f"{self.host_path}:{self.container_path}"
        return f"{base}:ro" if self.read_only else base


class DockerError(Exception):
    """Raised when a Docker API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def parse_bind_string(bind: str) -> VolumeMount | None:
    """Parse ``/host:/container[:ro]``; return None for named-volume binds."""
    parts = bind.split(":", 2)
    if len(parts) < 2:
        return None
    if not parts[0].startswith("/"):
        return None
    read_only = len(parts) > 2 and parts[2] == "ro"
    return VolumeMount(host_path=parts[0], container_path=parts[1], read_only=read_only)


def merge_binds(existing: Iterable[str], desired: Iterable[VolumeMount]) -> list[str]:
    """Keep named-volume binds from ``existing`` and append the desired host binds."""
    kept = [bind for bind in existing if not bind.startswith("/")]
    return kept + [mount.to_bind() for mount in desired]


def demux_logs(data: bytes) -> str:
    """Decode a Docker log stream, keeping stdout and stderr frames.

    Multiplexed streams carry an 8-byte header per frame; streams from a
    container with a TTY are raw and are decoded as a whole.
    """
    frames = list(_split_frames(data))
    if frames is None or not _is_multiplexed(data):
        return data.decode("utf-8", errors="replace")
    return "".join(
        payload.decode("utf-8", errors="replace")
        for kind, payload in frames
        if kind in (1, 2)
    )


def _is_multiplexed(data: bytes) -> bool:
    position = 0
    while position < len(data):
        header = data[position : position + 8]
        if len(header) < 8 or header[0] not in (0, 1, 2) or header[1:4] != b"\0\0\0":
            return False
        (size,) = struct.unpack(">I", header[4:8])
        position += 8 + size
        if position > len(data):
            return False
    return True


def _split_frames(data: bytes) -> Iterable[tuple[int, bytes]]:
    position = 0
    while position + 8 <= len(data):
        kind = data[position]
        (size,) = struct.unpack(">I", data[position + 4 : position + 8])
        start = position + 8
        yield kind, data[start : start + size]
        position = start + size


def _iter_json_objects(data: bytes) -> Iterable[Any]:
    text = data.decode("utf-8", errors="replace")
    decoder = json.JSONDecoder()
    position = 0
    while True:
        while position < len(text) and text[position].isspace():
            position += 1
        if position >= len(text):
            return
        value, position = decoder.raw_decode(text, position)
        yield value


def _drop_none(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str) -> None:
        super().__init__("localhost")
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class _UnixSocketTransport:
    """Send HTTP requests to the Docker daemon over its Unix socket."""

    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path

    def __call__(
        self,
        method: str,
        path: str,
        query: Mapping[str, str] | None,
        body: bytes | None,
    ) -> tuple[int, bytes]:
        target = path + (f"?{urlencode(query)}" if query else "")
        headers = {"Content-Type": "application/json"} if body is not None else {}
        connection = _UnixHTTPConnection(self.socket_path)
        try:
            connection.request(method, target, body=body, headers=headers)
            response = connection.getresponse()
            return response.status, response.read()
        finally:
            connection.close()


def _default_socket() -> str:
    host = os.environ.get("DOCKER_HOST", "")
    if host.startswith("unix://"):
        return host[len("unix://") :]
    return DEFAULT_SOCKET


class DockerManager:
    """High-level operations on a single named container."""

    def __init__(
        self,
        container_name: str,
        transport: Transport | None = None,
        socket_path: str | None = None,
    ) -> None:
        self.container_name = container_name
        self._transport: Transport = transport or _UnixSocketTransport(
            socket_path or _default_socket()
        )

    # ── low level ─────────────────────────────────────────────────────────

    @property
    def _path(self) -> str:
        return f"/containers/{quote(self.container_name, safe='')}"

    def _request(
        self,
        method: str,
        path: str,
        context: str,
        query: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> bytes:
        payload = json.dumps(body).encode("utf-8") if body is not None else None
        try:
            status, data = self._transport(method, path, query, payload)
        except OSError as exc:
            raise DockerError(f"{context}: {exc}") from exc
        if not 200 <= status < 300:
            raise DockerError(f"{context}: {_error_message(status, data)}", status)
        return data

    def _inspect(self) -> dict[str, Any]:
        context = f"inspect_container({self.container_name})"
        data = self._request("GET", f"{self._path}/json", context)
        try:
            info = json.loads(data)
        except ValueError as exc:
            raise DockerError(f"{context}: invalid response") from exc
        if not isinstance(info, dict):
            raise DockerError(f"{context}: invalid response")
        return info

    # ── lifecycle ─────────────────────────────────────────────────────────

    def restart(self) -> None:
        """Restart the managed container."""
        log.info("restarting container %s", self.container_name)
        self._request(
            "POST",
            f"{self._path}/restart",
            f"restart_container({self.container_name})",
            query={"t": str(STOP_TIMEOUT_SECONDS)},
        )
        log.info("container %s restarted", self.container_name)

    def stop(self) -> None:
        """Stop the managed container."""
        log.info("stopping container %s", self.container_name)
        self._request(
            "POST",
            f"{self._path}/stop",
            f"stop_container({self.container_name})",
            query={"t": str(STOP_TIMEOUT_SECONDS)},
        )

    def start(self) -> None:
        """Start the managed container."""
        log.info("starting container %s", self.container_name)
        self._request(
            "POST", f"{self._path}/start", f"start_container({self.container_name})"
        )

    def status(self) -> str:
        """Return a short human-readable status line for the container."""
        state = self._inspect().get("State") or {}
        raw_status = state.get("Status")
        status = raw_status.upper() if isinstance(raw_status, str) and raw_status else "unknown"
        running = state.get("Running") is True
        started_at = state.get("StartedAt")
        if not isinstance(started_at, str):
            started_at = "-"
        return (
            f"Container `{self.container_name}`: **{status}** "
            f"(running={'true' if running else 'false'}) since {started_at}"
        )

    def is_running(self) -> bool:
        """Whether the container is currently running; False on any error."""
        try:
            state = self._inspect().get("State") or {}
        except DockerError:
            return False
        return state.get("Status") == "running"

    def pull_image(self) -> list[str]:
        """Pull the container's configured image and return the progress lines."""
        config = self._inspect().get("Config") or {}
        image = config.get("Image")
        if not isinstance(image, str) or not image:
            raise DockerError("container has no image name")
        log.info("pulling image %s for %s", image, self.container_name)
        data = self._request(
            "POST", "/images/create", "image pull failed", query={"fromImage": image}
        )
        lines: list[str] = []
        try:
            items = list(_iter_json_objects(data))
        except ValueError as exc:
            raise DockerError(f"image pull failed: {exc}") from exc
        for item in items:
            if not isinstance(item, dict):
                continue
            if "error" in item:
                raise DockerError(f"image pull failed: {item['error']}")
            status = item.get("status")
            if isinstance(status, str):
                log.debug("pull: %s", status)
                lines.append(status)
        log.info("image pull complete for %s", self.container_name)
        return lines

    def logs(self, tail: int) -> str:
        """Return the last ``tail`` lines of stdout and stderr."""
        data = self._request(
            "GET",
            f"{self._path}/logs",
            f"logs({self.container_name})",
            query={"stdout": "true", "stderr": "true", "tail": str(tail)},
        )
        return demux_logs(data)

    # ── mounts ────────────────────────────────────────────────────────────

    def list_mounts(self) -> list[VolumeMount]:
        """Return the container's host-path bind mounts."""
        host_config = self._inspect().get("HostConfig") or {}
        binds = host_config.get("Binds") or []
        return [mount for bind in binds if (mount := parse_bind_string(bind)) is not None]

    def recreate_with_mounts(self, desired_mounts: Sequence[VolumeMount]) -> None:
        """Recreate the container with ``desired_mounts`` as its full host-bind set."""
        log.info("inspecting container %s before recreate", self.container_name)
        info = self._inspect()
        config = info.get("Config") or {}
        image = config.get("Image")
        if not isinstance(image, str) or not image:
            raise DockerError("container has no image")
        host = info.get("HostConfig") or {}
        new_binds = merge_binds(host.get("Binds") or [], desired_mounts)

        log.info("stopping container %s for recreate", self.container_name)
        try:
            self.stop()
        except DockerError:
            pass

        log.info("removing container %s for recreate", self.container_name)
        self._request(
            "DELETE",
            self._path,
            f"remove_container({self.container_name})",
            query={"force": "true"},
        )

        log.info("creating container %s with binds %s", self.container_name, new_binds)
        host_config = _drop_none(
            {
                "Binds": new_binds or None,
                "RestartPolicy": host.get("RestartPolicy"),
                "NetworkMode": host.get("NetworkMode"),
                "ExtraHosts": host.get("ExtraHosts"),
            }
        )
        create_body = _drop_none(
            {
                "Image": image,
                "Env": config.get("Env"),
                "Cmd": config.get("Cmd"),
                "Entrypoint": config.get("Entrypoint"),
                "Labels": config.get("Labels"),
                "HostConfig": host_config,
            }
        )
        self._request(
            "POST",
            "/containers/create",
            f"create_container({self.container_name})",
            query={"name": self.container_name},
            body=create_body,
        )
        self.start()
        log.info("container %s recreated with updated mounts", self.container_name)


def _error_message(status: int, data: bytes) -> str:
    try:
        payload = json.loads(data)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return f"{payload['message']} (status {status})"
    text = data.decode("utf-8", errors="replace").strip()
    return f"{text} (status {status})" if text else f"status {status}"