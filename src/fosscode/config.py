"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_SYSTEM_PROMPT = """\
You are fosscode, an AI coding assistant running in the user's terminal with direct access to tools \
for reading, writing and searching files and for running shell commands in the working directory.

<agentic_behavior>
- Complete tasks fully. When a task needs several tool calls, make them without pausing to ask for \
confirmation between steps.
- Default to action over suggestion. If you have the tools to do something, do it.
- When you are finished, give a concise final answer that states what was done.
</agentic_behavior>

<tool_use>
- Use `read` to read files, `edit` for targeted changes and `write` for new files.
- Use `list`, `glob` and `grep` to explore. Reserve `bash` for builds, tests and git.
- Tool calls in one response run in the order you emit them.
- If a tool call fails, read the error and change approach. Never repeat the exact same call.
- Treat tool outputs as real data. Never fabricate tool results.
</tool_use>"""

_DEFAULT_RESTRICTED_ROOTS = ["/etc", "/usr", "/sys", "/proc", "/dev", "/root"]

_DEFAULT_EXTENSIONS = [".txt", ".md", ".json", ".ts", ".js", ".py", ".rs", ".go", ".java", ".cpp", ".c", ".h"]

# Hard ceiling on model calls per turn; configured values may only lower it
MAX_ITERATIONS = 15


@dataclass
class AIConfig:
    base_url: str = ""
    api_key: str = ""
    model: str = "gpt-4o-mini"
    provider_name: str = "OpenAI"
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    verify_ssl: bool = True
    request_timeout: int = 120  # seconds
    connect_timeout: int = 10
    context_window: int = 128_000
    retry_max_attempts: int = 3  # retries after the first attempt; 0 = no retries
    retry_backoff_base: float = 1.0  # seconds; doubled each attempt


@dataclass
class SandboxConfig:
    allowed_roots: list[str] = field(default_factory=list)  # cwd is always allowed
    restricted_roots: list[str] = field(default_factory=lambda: list(_DEFAULT_RESTRICTED_ROOTS))
    allowed_extensions: list[str] = field(default_factory=lambda: list(_DEFAULT_EXTENSIONS))
    max_file_size: int = 10 * 1024 * 1024


@dataclass
class AgentConfig:
    max_iterations: int = MAX_ITERATIONS
    reserved_headroom: int = 8_000
    budget_cap_headroom: int = 3_000  # budget never exceeds context_window - this
    token_budget: int | None = None  # explicit override, skips the adaptive computation
    compress_threshold: int = 10
    compress_keep: int = 8
    compress_after_iteration: int = 2
    stall_band: tuple[float, float] = (0.8, 1.2)
    stall_turns: int = 3
    completion_min_matches: int = 2
    tool_output_max_chars: int = 20_000


@dataclass
class SchedulerConfig:
    max_concurrent: int = 3
    max_history: int = 50
    default_timeout: float | None = None  # seconds
    max_retries: int = 0


@dataclass
class CancellationConfig:
    escalation_window: float = 0.5  # seconds between presses that escalate to full


@dataclass
class AppConfig:
    ai: AIConfig
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cancellation: CancellationConfig = field(default_factory=CancellationConfig)
    working_dir: str = field(default_factory=os.getcwd)
    read_only: bool = False
    log_level: str = "WARNING"


def _resolve_data_dir() -> Path:
    env_dir = os.environ.get("FOSSCODE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".fosscode"


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return _resolve_data_dir() / "config.yaml"


def _clamped_int(raw: Any, default: int, low: int, high: int) -> int:
    try:
        return max(low, min(high, int(raw)))
    except (ValueError, TypeError):
        return default


def _clamped_float(raw: Any, default: float, low: float, high: float) -> float:
    try:
        return max(low, min(high, float(raw)))
    except (ValueError, TypeError):
        return default


def _as_bool(raw: Any) -> bool:
    return str(raw).lower() not in ("false", "0", "no", "off", "")


def _str_list(raw: Any, default: list[str]) -> list[str]:
    if raw is None:
        return list(default)
    if isinstance(raw, str):
        return [p.strip() for p in raw.split(",") if p.strip()]
    if isinstance(raw, list):
        return [str(p) for p in raw]
    return list(default)


def _load_ai(ai_raw: dict[str, Any]) -> AIConfig:
    env = os.environ
    user_system_prompt = ai_raw.get("system_prompt") or env.get("FOSSCODE_SYSTEM_PROMPT", "")
    system_prompt = _DEFAULT_SYSTEM_PROMPT
    if user_system_prompt:
        system_prompt += "\n\n<user_instructions>\n" + user_system_prompt + "\n</user_instructions>"

    return AIConfig(
        base_url=ai_raw.get("base_url") or env.get("FOSSCODE_BASE_URL", ""),
        api_key=ai_raw.get("api_key") or env.get("FOSSCODE_API_KEY", ""),
        model=ai_raw.get("model") or env.get("FOSSCODE_MODEL", "gpt-4o-mini"),
        provider_name=ai_raw.get("provider_name") or env.get("FOSSCODE_PROVIDER", "OpenAI"),
        system_prompt=system_prompt,
        verify_ssl=_as_bool(ai_raw.get("verify_ssl", env.get("FOSSCODE_VERIFY_SSL", "true"))),
        request_timeout=_clamped_int(
            ai_raw.get("request_timeout", env.get("FOSSCODE_REQUEST_TIMEOUT", 120)), 120, 10, 600
        ),
        connect_timeout=_clamped_int(ai_raw.get("connect_timeout", 10), 10, 1, 120),
        context_window=_clamped_int(
            ai_raw.get("context_window", env.get("FOSSCODE_CONTEXT_WINDOW", 128_000)), 128_000, 4_096, 2_000_000
        ),
        retry_max_attempts=_clamped_int(ai_raw.get("retry_max_attempts", 3), 3, 0, 10),
        retry_backoff_base=_clamped_float(ai_raw.get("retry_backoff_base", 1.0), 1.0, 0.0, 30.0),
    )


def _load_agent(agent_raw: dict[str, Any]) -> AgentConfig:
    defaults = AgentConfig()
    budget_raw = agent_raw.get("token_budget", os.environ.get("FOSSCODE_TOKEN_BUDGET"))
    token_budget = None
    if budget_raw is not None and budget_raw != "":
        token_budget = _clamped_int(budget_raw, 0, 0, 10_000_000)

    band_raw = agent_raw.get("stall_band", defaults.stall_band)
    try:
        low, high = float(band_raw[0]), float(band_raw[1])
        stall_band = (low, high) if low < high else defaults.stall_band
    except (TypeError, ValueError, IndexError):
        stall_band = defaults.stall_band

    return AgentConfig(
        max_iterations=_clamped_int(
            agent_raw.get("max_iterations", os.environ.get("FOSSCODE_MAX_ITERATIONS", MAX_ITERATIONS)),
            MAX_ITERATIONS,
            1,
            MAX_ITERATIONS,
        ),
        reserved_headroom=_clamped_int(agent_raw.get("reserved_headroom", 8_000), 8_000, 0, 1_000_000),
        budget_cap_headroom=_clamped_int(agent_raw.get("budget_cap_headroom", 3_000), 3_000, 0, 1_000_000),
        token_budget=token_budget,
        compress_threshold=_clamped_int(agent_raw.get("compress_threshold", 10), 10, 2, 1_000),
        compress_keep=_clamped_int(agent_raw.get("compress_keep", 8), 8, 1, 1_000),
        compress_after_iteration=_clamped_int(agent_raw.get("compress_after_iteration", 2), 2, 0, 100),
        stall_band=stall_band,
        stall_turns=_clamped_int(agent_raw.get("stall_turns", 3), 3, 1, 100),
        completion_min_matches=_clamped_int(agent_raw.get("completion_min_matches", 2), 2, 1, 100),
        tool_output_max_chars=_clamped_int(agent_raw.get("tool_output_max_chars", 20_000), 20_000, 500, 1_000_000),
    )


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    ai = _load_ai(raw.get("ai", {}) or {})

    sandbox_raw = raw.get("sandbox", {}) or {}
    sandbox = SandboxConfig(
        allowed_roots=_str_list(
            sandbox_raw.get("allowed_roots", os.environ.get("FOSSCODE_ALLOWED_ROOTS")), []
        ),
        restricted_roots=_str_list(sandbox_raw.get("restricted_roots"), _DEFAULT_RESTRICTED_ROOTS),
        allowed_extensions=_str_list(sandbox_raw.get("allowed_extensions"), _DEFAULT_EXTENSIONS),
        max_file_size=_clamped_int(
            sandbox_raw.get("max_file_size", 10 * 1024 * 1024), 10 * 1024 * 1024, 1, 1024 * 1024 * 1024
        ),
    )

    scheduler_raw = raw.get("scheduler", {}) or {}
    timeout_raw = scheduler_raw.get("default_timeout")
    scheduler = SchedulerConfig(
        max_concurrent=_clamped_int(
            scheduler_raw.get("max_concurrent", os.environ.get("FOSSCODE_MAX_CONCURRENT", 3)), 3, 1, 64
        ),
        max_history=_clamped_int(scheduler_raw.get("max_history", 50), 50, 0, 10_000),
        default_timeout=_clamped_float(timeout_raw, 0.0, 0.001, 86_400.0) if timeout_raw is not None else None,
        max_retries=_clamped_int(scheduler_raw.get("max_retries", 0), 0, 0, 10),
    )

    cancel_raw = raw.get("cancellation", {}) or {}
    cancellation = CancellationConfig(
        escalation_window=_clamped_float(cancel_raw.get("escalation_window", 0.5), 0.5, 0.05, 5.0),
    )

    return AppConfig(
        ai=ai,
        sandbox=sandbox,
        agent=_load_agent(raw.get("agent", {}) or {}),
        scheduler=scheduler,
        cancellation=cancellation,
        working_dir=str(raw.get("working_dir") or os.getcwd()),
        read_only=_as_bool(raw.get("read_only", os.environ.get("FOSSCODE_READ_ONLY", "false"))),
        log_level=str(raw.get("log_level") or os.environ.get("FOSSCODE_LOG_LEVEL", "WARNING")).upper(),
    )


def require_backend(config: AppConfig, config_path: Path | None = None) -> None:
    """Raise ValueError if the model backend is not configured."""
    path = config_path or _get_config_path()
    if not config.ai.base_url:
        raise ValueError(
            "AI base_url is required. Set 'ai.base_url' in config.yaml "
            f"({path}) or FOSSCODE_BASE_URL environment variable."
        )
    if not config.ai.api_key:
        raise ValueError(
            f"AI api_key is required. Set 'ai.api_key' in config.yaml ({path}) or FOSSCODE_API_KEY environment variable."
        )
