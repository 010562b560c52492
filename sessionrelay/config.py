"""Config loading for SessionRelay.

Reads `.sessionrelay/config.yaml` (or `~/.sessionrelay/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. RELAY_CONFIG environment variable (if set)
  3. `.sessionrelay/config.yaml` (working directory — for development)
  4. `~/.sessionrelay/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  RELAY_PORT   — overrides server.port (takes precedence over config file value)
  RELAY_CONFIG — sets an explicit config file path to try first

Secrets are never read from the YAML file. The JWT secret and the Supabase
credentials come from the environment only (see auth/middleware.py and
store/factory.py).
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from sessionrelay.constants import (
    DEFAULT_HANDOFF_CODE_LENGTH,
    DEFAULT_MAX_COLLISION_RETRIES,
    DEFAULT_SEARCH_MAX_RESULTS,
    DEFAULT_STORE_TIMEOUT_S,
    DEFAULT_SWEEP_INTERVAL_S,
    MAX_HANDOFF_CODE_LENGTH,
    MIN_HANDOFF_CODE_LENGTH,
    RATE_LIMIT_ACTION_MAX_LEN,
    RATE_LIMIT_MAX_COUNT_CEILING,
    RATE_LIMIT_WINDOW_MINUTES_CEILING,
)
from sessionrelay.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".sessionrelay/config.yaml",
    os.path.expanduser("~/.sessionrelay/config.yaml"),
]

DEFAULT_CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class RateLimitPolicy:
    """Admission policy for one named action: at most ``max_count`` admitted
    attempts inside any trailing window of ``window_minutes``."""

    max_count: int
    window_minutes: int


def _default_policies() -> dict[str, RateLimitPolicy]:
    return {
        "user_search": RateLimitPolicy(max_count=30, window_minutes=1),
        "handoff_create": RateLimitPolicy(max_count=10, window_minutes=1),
        "handoff_redeem": RateLimitPolicy(max_count=10, window_minutes=1),
        "friend_request": RateLimitPolicy(max_count=10, window_minutes=60),
        "score_submit": RateLimitPolicy(max_count=50, window_minutes=1440),
        "vote": RateLimitPolicy(max_count=100, window_minutes=60),
    }


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8787


@dataclass
class HandoffConfig:
    """Handoff code generation. The 5-minute lifetime is fixed, not configurable."""

    code_length: int = DEFAULT_HANDOFF_CODE_LENGTH
    max_collision_retries: int = DEFAULT_MAX_COLLISION_RETRIES


@dataclass
class RateLimitsConfig:
    """Per-action policies plus the slowapi per-address blanket cap."""

    policies: dict[str, RateLimitPolicy] = field(default_factory=_default_policies)
    per_address_limit: str = "60/minute"


@dataclass
class StoreConfig:
    """Store backend configuration. RELAY_DB_PATH overrides ``path``."""

    path: str = "~/.sessionrelay/relay.db"
    timeout_s: float = DEFAULT_STORE_TIMEOUT_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S


@dataclass
class AuthConfig:
    """Bearer token verification. The signing secret is env-only (RELAY_JWT_SECRET)."""

    audience: str = "authenticated"
    algorithms: list[str] = field(default_factory=lambda: ["HS256"])


@dataclass
class CorsConfig:
    allow_origins: list[str] = field(default_factory=lambda: ["*"])
    allow_headers: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_HEADERS))


@dataclass
class SearchConfig:
    max_results: int = DEFAULT_SEARCH_MAX_RESULTS


@dataclass
class Config:
    """Root configuration object populated from .sessionrelay/config.yaml.

    All fields have safe defaults — SessionRelay can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    handoff: HandoffConfig = field(default_factory=HandoffConfig)
    rate_limits: RateLimitsConfig = field(default_factory=RateLimitsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On any value outside its allowed range.
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = _section(raw, "server")
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8787),
        )
        if not isinstance(server.port, int) or not 1 <= server.port <= 65535:
            _fail(f"Invalid server.port: {server.port!r}. Must be an integer in [1, 65535].")

        # ── Handoff ───────────────────────────────────────────────────────────
        handoff_raw = _section(raw, "handoff")
        handoff = HandoffConfig(
            code_length=handoff_raw.get("code_length", DEFAULT_HANDOFF_CODE_LENGTH),
            max_collision_retries=handoff_raw.get(
                "max_collision_retries", DEFAULT_MAX_COLLISION_RETRIES
            ),
        )
        if (
            not isinstance(handoff.code_length, int)
            or not MIN_HANDOFF_CODE_LENGTH <= handoff.code_length <= MAX_HANDOFF_CODE_LENGTH
        ):
            _fail(
                f"Invalid handoff.code_length: {handoff.code_length!r}. "
                f"Must be an integer in [{MIN_HANDOFF_CODE_LENGTH}, {MAX_HANDOFF_CODE_LENGTH}]."
            )
        if not isinstance(handoff.max_collision_retries, int) or handoff.max_collision_retries < 1:
            _fail(
                f"Invalid handoff.max_collision_retries: {handoff.max_collision_retries!r}. "
                "Must be a positive integer."
            )

        # ── Rate limits ───────────────────────────────────────────────────────
        rl_raw = _section(raw, "rate_limits")
        policies = _default_policies()
        for action, policy_raw in (rl_raw.get("policies") or {}).items():
            policies[str(action)] = _parse_policy(str(action), policy_raw)
        rate_limits = RateLimitsConfig(
            policies=policies,
            per_address_limit=rl_raw.get("per_address_limit", "60/minute"),
        )

        # ── Store ─────────────────────────────────────────────────────────────
        store_raw = _section(raw, "store")
        store = StoreConfig(
            path=store_raw.get("path", "~/.sessionrelay/relay.db"),
            timeout_s=store_raw.get("timeout_s", DEFAULT_STORE_TIMEOUT_S),
            sweep_interval_s=store_raw.get("sweep_interval_s", DEFAULT_SWEEP_INTERVAL_S),
        )
        if not isinstance(store.timeout_s, (int, float)) or store.timeout_s <= 0:
            _fail(f"Invalid store.timeout_s: {store.timeout_s!r}. Must be a positive number.")
        if not isinstance(store.sweep_interval_s, (int, float)) or store.sweep_interval_s <= 0:
            _fail(
                f"Invalid store.sweep_interval_s: {store.sweep_interval_s!r}. "
                "Must be a positive number."
            )

        # ── Auth ──────────────────────────────────────────────────────────────
        auth_raw = _section(raw, "auth")
        auth = AuthConfig(
            audience=auth_raw.get("audience", "authenticated"),
            algorithms=auth_raw.get("algorithms", ["HS256"]),
        )

        # ── CORS ──────────────────────────────────────────────────────────────
        cors_raw = _section(raw, "cors")
        cors = CorsConfig(
            allow_origins=cors_raw.get("allow_origins", ["*"]),
            allow_headers=cors_raw.get("allow_headers", list(DEFAULT_CORS_HEADERS)),
        )

        # ── Search ────────────────────────────────────────────────────────────
        search_raw = _section(raw, "search")
        search = SearchConfig(
            max_results=search_raw.get("max_results", DEFAULT_SEARCH_MAX_RESULTS),
        )
        if not isinstance(search.max_results, int) or not 1 <= search.max_results <= 100:
            _fail(f"Invalid search.max_results: {search.max_results!r}. Must be in [1, 100].")

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            handoff=handoff,
            rate_limits=rate_limits,
            store=store,
            auth=auth,
            cors=cors,
            search=search,
            path=path,
        )


# ─── Parsing helpers ──────────────────────────────────────────────────────────


def _fail(detail: str) -> None:
    print(f"CONFIG ERROR: {detail}", file=sys.stderr)
    raise SystemExit(1)


def _section(raw: dict, name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        _fail(f"'{name}' must be a mapping.")
    return value


def _parse_policy(action: str, policy_raw: Any) -> RateLimitPolicy:
    """Validate one ``rate_limits.policies.<action>`` entry.

    Bounds match RateLimiter.check_and_record so a bad policy fails at startup
    rather than on the first request.
    """
    if not action.strip() or len(action) > RATE_LIMIT_ACTION_MAX_LEN:
        _fail(f"Invalid rate limit action name: {action!r}.")
    if not isinstance(policy_raw, dict):
        _fail(f"rate_limits.policies.{action} must be a mapping.")
    max_count = policy_raw.get("max_count")
    window_minutes = policy_raw.get("window_minutes")
    if not isinstance(max_count, int) or not 1 <= max_count <= RATE_LIMIT_MAX_COUNT_CEILING:
        _fail(
            f"Invalid rate_limits.policies.{action}.max_count: {max_count!r}. "
            f"Must be an integer in [1, {RATE_LIMIT_MAX_COUNT_CEILING}]."
        )
    if (
        not isinstance(window_minutes, int)
        or not 1 <= window_minutes <= RATE_LIMIT_WINDOW_MINUTES_CEILING
    ):
        _fail(
            f"Invalid rate_limits.policies.{action}.window_minutes: {window_minutes!r}. "
            f"Must be an integer in [1, {RATE_LIMIT_WINDOW_MINUTES_CEILING}]."
        )
    return RateLimitPolicy(max_count=max_count, window_minutes=window_minutes)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate SessionRelay configuration.

    Search order:
      1. ``config_path`` argument
      2. ``RELAY_CONFIG`` environment variable
      3. ``.sessionrelay/config.yaml``
      4. ``~/.sessionrelay/config.yaml``

    If no file is found at any of these paths, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, an out-of-range value, or invalid ``RELAY_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("RELAY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "SessionRelay refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: SessionRelay is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating reverse proxy."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        policies=sorted(config.rate_limits.policies),
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Currently handles:
      RELAY_PORT    — overrides config.server.port
      RELAY_DB_PATH — overrides config.store.path

    Raises:
        SystemExit(1): If RELAY_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("RELAY_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            msg = (
                f"CONFIG ERROR: RELAY_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)

    env_db_path = os.environ.get("RELAY_DB_PATH")
    if env_db_path:
        config.store.path = env_db_path
