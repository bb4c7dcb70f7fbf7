"""
Codex Config Synthesizer

Keeps ``$CODEX_HOME/config.toml`` in step with what the engine needs:

    approval_policy = "<policy>"
    [sandbox_workspace_write]
    network_access = <bool>
    [mcp_servers.<name>]         # one per enabled stdio server
    command = "..."
    args = [...]
    env = {...}

Approval policy, network access and MCP servers cannot be passed per thread,
so they live in this shared file. Only keys owned by the engine are touched;
the names of managed ``mcp_servers`` entries are listed in a manifest next to
the config so servers removed from the registry can be dropped without
clobbering entries a user added by hand.

Writes happen only when the content hash changes. Every successful write
fires ``on_change`` so the runtime client is recreated.
"""

import asyncio
import hashlib
import json
import os
import re
import tempfile
import tomllib
from typing import Any, Callable, Dict, List, Optional, Tuple

import tomli_w

from .ports import Repository
from .types import MCPServer
from ...utils.logger import get_logger

logger = get_logger(__name__)

CONFIG_FILENAME = "config.toml"
MANIFEST_FILENAME = ".codex-engine-managed.json"
DEFAULT_HEADER = "# Codex configuration\n# Managed by codex-engine\n\n"

_HEADER_RE = re.compile(r"^(?:[ \t]*#[^\n]*\n)*")


def normalize_server_name(name: str) -> str:
    """Lowercase, with anything outside ``[a-z0-9_-]`` replaced by ``_``."""
    return re.sub(r"[^a-z0-9_-]", "_", name.lower())


def server_entry(server: MCPServer) -> Dict[str, Any]:
    entry: Dict[str, Any] = {}
    if server.command:
        entry["command"] = server.command
    if server.args:
        entry["args"] = list(server.args)
    if server.env:
        entry["env"] = dict(server.env)
    return entry


def compute_config_hash(
    approval_policy: str,
    network_access: bool,
    entries: Dict[str, Dict[str, Any]],
    codex_home: str,
) -> str:
    payload = json.dumps(
        {
            "approval_policy": approval_policy,
            "network_access": network_access,
            "mcp_servers": sorted(entries.items()),
            "codex_home": codex_home,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _atomic_write(path: str, content: str) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.basename(path))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class ConfigSynthesizer:
    """
    Owner of the shared Codex config artifact.

    One instance per process; all writes are serialized by ``_lock``.
    """

    def __init__(
        self,
        repository: Repository,
        codex_home: str,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.repository = repository
        self.codex_home = codex_home
        self.on_change = on_change
        self.write_count = 0
        self._last_hash: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def config_path(self) -> str:
        return os.path.join(self.codex_home, CONFIG_FILENAME)

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.codex_home, MANIFEST_FILENAME)

    @property
    def last_hash(self) -> Optional[str]:
        return self._last_hash

    def forget(self) -> None:
        """Drop the recorded hash so the next ``ensure_config`` rewrites the file."""
        self._last_hash = None

    async def ensure_config(self, approval_policy: str, network_access: bool, session_id: str) -> int:
        """
        Make sure config.toml reflects the given permissions and the session's servers.

        Args:
            approval_policy: untrusted | on-request | on-failure | never
            network_access: Outbound network in workspace-write sandbox
            session_id: Session whose enabled MCP servers are applied

        Returns:
            Number of stdio MCP servers applied
        """
        servers = await self.repository.list_enabled_mcp_servers(session_id)
        stdio_servers = [s for s in servers if s.is_stdio]

        for server in servers:
            if not server.is_stdio:
                logger.warning(
                    "Skipping MCP server, Codex only supports stdio transport",
                    session_id=session_id,
                    server=server.name,
                    transport=server.transport,
                )

        entries: Dict[str, Dict[str, Any]] = {}
        for server in stdio_servers:
            entries[normalize_server_name(server.name)] = server_entry(server)

        config_hash = compute_config_hash(approval_policy, network_access, entries, self.codex_home)

        async with self._lock:
            if config_hash == self._last_hash:
                logger.debug("Codex config unchanged, skipping write", session_id=session_id)
                return len(stdio_servers)

            try:
                await asyncio.to_thread(self._write_artifact, approval_policy, network_access, entries)
            except OSError as e:
                logger.error(
                    "Failed to write Codex config, continuing with previous config",
                    path=self.config_path,
                    error=str(e),
                )
                return len(stdio_servers)

            self._last_hash = config_hash
            self.write_count += 1

        logger.info(
            "Updated Codex config",
            path=self.config_path,
            approval_policy=approval_policy,
            network_access=network_access,
            servers=",".join(sorted(entries)) or "-",
        )
        if self.on_change:
            self.on_change()

        return len(stdio_servers)

    # =========================================================================
    # Artifact I/O
    # =========================================================================

    def _read_existing(self) -> Tuple[str, Dict[str, Any]]:
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return "", {}
        except OSError as e:
            logger.warning("Failed to read existing config.toml", path=self.config_path, error=str(e))
            return "", {}

        try:
            data = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as e:
            logger.warning("Existing config.toml is not valid TOML", path=self.config_path, error=str(e))
            return "", {}

        header = _HEADER_RE.match(raw).group(0)
        return header, data

    def _read_manifest(self) -> List[str]:
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                parsed = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Failed to read managed server manifest", path=self.manifest_path, error=str(e))
            return []

        names = parsed.get("mcp_servers") if isinstance(parsed, dict) else None
        return [n for n in names if isinstance(n, str)] if isinstance(names, list) else []

    def _write_artifact(
        self,
        approval_policy: str,
        network_access: bool,
        entries: Dict[str, Dict[str, Any]],
    ) -> None:
        os.makedirs(self.codex_home, exist_ok=True)

        header, data = self._read_existing()
        previously_managed = self._read_manifest()

        data["approval_policy"] = approval_policy

        sandbox = data.get("sandbox_workspace_write")
        sandbox = dict(sandbox) if isinstance(sandbox, dict) else {}
        sandbox["network_access"] = network_access
        data["sandbox_workspace_write"] = sandbox

        mcp_servers = data.get("mcp_servers")
        mcp_servers = dict(mcp_servers) if isinstance(mcp_servers, dict) else {}
        mcp_servers.update(entries)
        for name in previously_managed:
            if name not in entries:
                mcp_servers.pop(name, None)

        if mcp_servers:
            data["mcp_servers"] = mcp_servers
        else:
            data.pop("mcp_servers", None)

        if not header.strip():
            header = DEFAULT_HEADER
        elif not header.endswith("\n\n"):
            header += "\n"

        _atomic_write(self.config_path, header + tomli_w.dumps(data))
        _atomic_write(
            self.manifest_path,
            json.dumps({"mcp_servers": sorted(entries)}, indent=2) + "\n",
        )
