from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
import tomllib
from typing import cast


DEFAULT_CONFIG_PATH = Path("mrpilot.toml")
DEFAULT_CLAUDE_ALLOWED_TOOLS: tuple[str, ...] = (
    "Bash(git:*)",
    "Read",
    "Write",
    "Edit",
    "MultiEdit",
    "NotebookEdit",
    "Glob",
    "Grep",
    "LS",
)
DEFAULT_AUTOMATION_PROMPT = (
    "You are running unattended from a GitLab webhook. Explore the project structure "
    "with the read-only tools before changing anything. For merge request context, use "
    "git log, git diff and git show to inspect the actual changes. Edit files directly "
    "without asking for permission and finish with a short summary of what changed."
)
_ENV_REFERENCE_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class ServerConfig:
    webhook_secret: str
    host: str = "0.0.0.0"
    port: int = 3000
    bot_username: str | None = None


@dataclass(frozen=True)
class GitLabConfig:
    token: str
    base_url: str = "https://gitlab.com"


@dataclass(frozen=True)
class WorkspaceConfig:
    root: Path
    clone_depth: int | None = 1
    git_user_name: str = "mrpilot"
    git_user_email: str = "mrpilot@localhost"


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path | None = None
    verbose: str | None = None


@dataclass(frozen=True)
class ClaudeConfig:
    enabled: bool = True
    model: str | None = None
    timeout_seconds: int = 600
    max_timeout_minutes: int = 60
    base_url: str | None = None
    auth_token: str | None = None
    allowed_tools: tuple[str, ...] = DEFAULT_CLAUDE_ALLOWED_TOOLS
    system_prompt: str = DEFAULT_AUTOMATION_PROMPT


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool = True
    model: str | None = None
    timeout_seconds: int = 900
    max_timeout_minutes: int = 60
    binary: str = "codex"
    base_url: str | None = None
    api_key: str | None = None
    extra_args: tuple[str, ...] = ()
    reasoning_effort: str = "high"
    generate_config: bool = False
    codex_home: Path | None = None


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig
    gitlab: GitLabConfig
    workspace: WorkspaceConfig
    runtime: RuntimeConfig
    claude: ClaudeConfig
    codex: CodexConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: dict[str, str] | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    env = dict(os.environ) if environ is None else environ
    return parse_config(cast(dict[str, object], data), environ=env)


def parse_config(data: dict[str, object], *, environ: dict[str, str]) -> AppConfig:
    reader = _Reader(environ)
    server_data = _require_table(data, "server")
    gitlab_data = _require_table(data, "gitlab")
    workspace_data = _optional_table(data, "workspace") or {}
    runtime_data = _optional_table(data, "runtime") or {}
    agents_data = _optional_table(data, "agents") or {}
    claude_data = _optional_table(agents_data, "claude", label="agents.claude") or {}
    codex_data = _optional_table(agents_data, "codex", label="agents.codex") or {}

    server = ServerConfig(
        webhook_secret=reader.require_str(server_data, "webhook_secret"),
        host=reader.str_with_default(server_data, "host", "0.0.0.0"),
        port=_int_with_default(server_data, "port", 3000),
        bot_username=reader.optional_str(server_data, "bot_username"),
    )
    if not 0 < server.port < 65536:
        raise ConfigError("server.port must be between 1 and 65535")

    gitlab = GitLabConfig(
        token=reader.require_str(gitlab_data, "token"),
        base_url=reader.str_with_default(gitlab_data, "base_url", "https://gitlab.com").rstrip(
            "/"
        ),
    )

    clone_depth = _int_with_default(workspace_data, "clone_depth", 1)
    if clone_depth < 0:
        raise ConfigError("workspace.clone_depth must be >= 0 (0 means full clone)")
    workspace = WorkspaceConfig(
        root=Path(
            reader.str_with_default(workspace_data, "root", "/tmp/mrpilot-work")
        ).expanduser(),
        clone_depth=clone_depth or None,
        git_user_name=reader.str_with_default(workspace_data, "git_user_name", "mrpilot"),
        git_user_email=reader.str_with_default(
            workspace_data, "git_user_email", "mrpilot@localhost"
        ),
    )

    state_dir = reader.optional_str(runtime_data, "state_dir")
    verbose = reader.optional_str(runtime_data, "verbose")
    if verbose is not None and verbose.strip().lower() not in {"low", "high"}:
        raise ConfigError("runtime.verbose must be one of: low, high")
    runtime = RuntimeConfig(
        state_dir=Path(state_dir).expanduser() if state_dir is not None else None,
        verbose=verbose.strip().lower() if verbose is not None else None,
    )

    claude = ClaudeConfig(
        enabled=_bool_with_default(claude_data, "enabled", True),
        model=reader.optional_str(claude_data, "model"),
        timeout_seconds=_positive_int_with_default(claude_data, "timeout_seconds", 600),
        max_timeout_minutes=_positive_int_with_default(claude_data, "max_timeout_minutes", 60),
        base_url=reader.optional_str(claude_data, "base_url"),
        auth_token=reader.optional_str(claude_data, "auth_token"),
        allowed_tools=_tuple_of_str_with_default(
            claude_data, "allowed_tools", DEFAULT_CLAUDE_ALLOWED_TOOLS
        ),
        system_prompt=reader.str_with_default(
            claude_data, "system_prompt", DEFAULT_AUTOMATION_PROMPT
        ),
    )

    codex_home = reader.optional_str(codex_data, "codex_home")
    codex = CodexConfig(
        enabled=_bool_with_default(codex_data, "enabled", True),
        model=reader.optional_str(codex_data, "model"),
        timeout_seconds=_positive_int_with_default(codex_data, "timeout_seconds", 900),
        max_timeout_minutes=_positive_int_with_default(codex_data, "max_timeout_minutes", 60),
        binary=reader.str_with_default(codex_data, "binary", "codex"),
        base_url=reader.optional_str(codex_data, "base_url"),
        api_key=reader.optional_str(codex_data, "api_key"),
        extra_args=_tuple_of_str_with_default(codex_data, "extra_args", ()),
        reasoning_effort=reader.str_with_default(codex_data, "reasoning_effort", "high"),
        generate_config=_bool_with_default(codex_data, "generate_config", False),
        codex_home=Path(codex_home).expanduser() if codex_home is not None else None,
    )
    if codex.generate_config and (codex.model is None or codex.base_url is None):
        raise ConfigError("agents.codex.generate_config requires model and base_url")

    return AppConfig(
        server=server,
        gitlab=gitlab,
        workspace=workspace,
        runtime=runtime,
        claude=claude,
        codex=codex,
    )


def expand_env(value: str, environ: dict[str, str]) -> str:
    """Replace ``${VAR}`` and ``$VAR`` references; unset variables become empty."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return environ.get(name, "")

    return _ENV_REFERENCE_RE.sub(_replace, value)


class _Reader:
    def __init__(self, environ: dict[str, str]) -> None:
        self._environ = environ

    def require_str(self, data: dict[str, object], key: str) -> str:
        value = self._expanded(data, key)
        if value is None or not value:
            raise ConfigError(f"{key} is required and must be a non-empty string")
        return value

    def optional_str(self, data: dict[str, object], key: str) -> str | None:
        value = self._expanded(data, key)
        if value is None or not value:
            return None
        return value

    def str_with_default(self, data: dict[str, object], key: str, default: str) -> str:
        if key not in data:
            return default
        value = self._expanded(data, key)
        if value is None or not value:
            raise ConfigError(f"{key} must be a non-empty string")
        return value

    def _expanded(self, data: dict[str, object], key: str) -> str | None:
        value = data.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string")
        return expand_env(value, self._environ).strip()


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(
    data: dict[str, object], key: str, *, label: str | None = None
) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    name = label or key
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{name}] must have string keys")
    return cast(dict[str, object], value)


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _positive_int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = _int_with_default(data, key, default)
    if value < 1:
        raise ConfigError(f"{key} must be an integer >= 1")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data.get(key)
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item.strip())
    return tuple(out)
