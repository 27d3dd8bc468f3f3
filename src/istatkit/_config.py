"""
Global configuration for the istatkit client.

Convention over configuration: defaults match the limits observed on the ISTAT
services, so most users never call ``ISTAT.configure()``. Core components never
read this module directly during a request; they receive plain values through
their constructors, and this module only supplies the defaults.

Hierarchy of precedence (highest to lowest):
1. Arguments passed to component constructors
2. Values set via ISTAT.configure()
3. Environment variables (ISTATKIT_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from istatkit import ISTAT
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> ISTAT.config.rate_limit.min_delay
    13.0
    >>>
    >>> # Custom configuration
    >>> ISTAT.configure(
    ...     http={"api_surface": "hvd_v1", "timeout": 120},
    ...     cache={"cache_dir": "/var/cache/istat"},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Self

# Type alias for the supported API surfaces
ApiSurface = Literal["legacy", "hvd_v1", "hvd_v2"]
FormatName = Literal["csv", "json", "xml"]

_SECTIONS = ("http", "rate_limit", "cache", "demo")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("ISTATKIT_HTTP_TIMEOUT", type_hint=int)
        240
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """Infer converter function from a type hint (actual type or PEP 563 string)."""
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides ``with_overrides()`` for partial updates with strict field-name
    validation, and ``with_env_vars()`` to apply the env vars declared in the
    field metadata.

    Example:
        >>> config = HttpConfig()
        >>> config.with_overrides({"timeout": 60}).timeout
        60
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(var_name=env_var, type_hint=f.type)
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)

    def env_touched_fields(self) -> list[str]:
        """Names of the fields whose env var is currently set."""
        return [
            f.name for f in fields(self)
            if f.metadata.get("env") and os.environ.get(f.metadata["env"])
        ]


def _require_http_url(value: str, name: str, section: str) -> None:
    if not (value.startswith("http://") or value.startswith("https://")):
        raise ConfigValidationError(
            name, value, "Must start with 'http://' or 'https://'.", section=section
        )


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass(frozen=True)
class HttpConfig(OverridableConfig):
    """
    HTTP and API-surface configuration.

    Attributes:
        timeout: Request timeout in seconds. ISTAT answers slowly for large datasets.
            Env var: ISTATKIT_HTTP_TIMEOUT

        user_agent: User-Agent header sent with every request.
            Env var: ISTATKIT_HTTP_USER_AGENT

        api_surface: Active API dialect: "legacy", "hvd_v1" or "hvd_v2".
            Env var: ISTATKIT_HTTP_API_SURFACE

        legacy_base_url: Base URL of the legacy SDMX web service.
            Env var: ISTATKIT_HTTP_LEGACY_BASE_URL

        hvd_base_url: Base URL of the high-value datasets service (v1 and v2).
            Env var: ISTATKIT_HTTP_HVD_BASE_URL

        agency_id: SDMX agency for structure and v2 data queries.
            Env var: ISTATKIT_HTTP_AGENCY_ID

        provider: Data provider path segment for legacy and v1 data queries.
            Env var: ISTATKIT_HTTP_PROVIDER

        default_filter: Filter used when the caller passes none.
            Env var: ISTATKIT_HTTP_DEFAULT_FILTER

        data_format: Preferred data format ("csv" or "json").
            Env var: ISTATKIT_HTTP_DATA_FORMAT
    """

    timeout: int = field(default=240, metadata={"env": "ISTATKIT_HTTP_TIMEOUT"})
    user_agent: str = field(
        default="istatkit Python client (https://esploradati.istat.it)",
        metadata={"env": "ISTATKIT_HTTP_USER_AGENT"},
    )
    api_surface: ApiSurface = field(default="legacy", metadata={"env": "ISTATKIT_HTTP_API_SURFACE"})
    legacy_base_url: str = field(
        default="https://esploradati.istat.it/SDMXWS",
        metadata={"env": "ISTATKIT_HTTP_LEGACY_BASE_URL"},
    )
    hvd_base_url: str = field(
        default="https://esploradati.istat.it/hvd",
        metadata={"env": "ISTATKIT_HTTP_HVD_BASE_URL"},
    )
    agency_id: str = field(default="IT1", metadata={"env": "ISTATKIT_HTTP_AGENCY_ID"})
    provider: str = field(default="all", metadata={"env": "ISTATKIT_HTTP_PROVIDER"})
    default_filter: str = field(default="ALL", metadata={"env": "ISTATKIT_HTTP_DEFAULT_FILTER"})
    data_format: FormatName = field(default="csv", metadata={"env": "ISTATKIT_HTTP_DATA_FORMAT"})

    def validate(self) -> Self:
        """Validate HTTP configuration fields."""
        if self.timeout <= 0:
            raise ConfigValidationError("timeout", self.timeout, "Must be greater than 0.", section="http")
        if self.api_surface not in ("legacy", "hvd_v1", "hvd_v2"):
            raise ConfigValidationError(
                "api_surface", self.api_surface,
                "Unknown API surface. Must be one of: ('legacy', 'hvd_v1', 'hvd_v2').", section="http"
            )
        if self.data_format not in ("csv", "json"):
            raise ConfigValidationError(
                "data_format", self.data_format, "Must be one of: ('csv', 'json').", section="http"
            )
        _require_http_url(self.legacy_base_url, "legacy_base_url", "http")
        _require_http_url(self.hvd_base_url, "hvd_base_url", "http")
        if not self.agency_id:
            raise ConfigValidationError("agency_id", self.agency_id, "Must not be empty.", section="http")
        if not self.provider:
            raise ConfigValidationError("provider", self.provider, "Must not be empty.", section="http")
        return self


@dataclass(frozen=True)
class RateLimitConfig(OverridableConfig):
    """
    Throttling, retry and ban-detection configuration.

    The defaults keep a single client under ISTAT's limit of roughly five
    requests per minute.

    Attributes:
        min_delay: Minimum seconds between two requests.
            Env var: ISTATKIT_RATE_LIMIT_MIN_DELAY

        jitter_fraction: Relative randomization of throttle and backoff waits (0-1).
            Env var: ISTATKIT_RATE_LIMIT_JITTER_FRACTION

        max_retries: Total attempts per request (including the first one).
            Env var: ISTATKIT_RATE_LIMIT_MAX_RETRIES

        initial_backoff: Wait in seconds after the first failed attempt.
            Env var: ISTATKIT_RATE_LIMIT_INITIAL_BACKOFF

        backoff_multiplier: Growth factor of consecutive backoff waits.
            Env var: ISTATKIT_RATE_LIMIT_BACKOFF_MULTIPLIER

        max_backoff: Upper bound for a single backoff wait in seconds.
            Env var: ISTATKIT_RATE_LIMIT_MAX_BACKOFF

        ban_threshold: Consecutive HTTP 429 responses that signal a suspected ban.
            Env var: ISTATKIT_RATE_LIMIT_BAN_THRESHOLD
    """

    min_delay: float = field(default=13.0, metadata={"env": "ISTATKIT_RATE_LIMIT_MIN_DELAY"})
    jitter_fraction: float = field(default=0.1, metadata={"env": "ISTATKIT_RATE_LIMIT_JITTER_FRACTION"})
    max_retries: int = field(default=3, metadata={"env": "ISTATKIT_RATE_LIMIT_MAX_RETRIES"})
    initial_backoff: float = field(default=60.0, metadata={"env": "ISTATKIT_RATE_LIMIT_INITIAL_BACKOFF"})
    backoff_multiplier: float = field(default=2.0, metadata={"env": "ISTATKIT_RATE_LIMIT_BACKOFF_MULTIPLIER"})
    max_backoff: float = field(default=300.0, metadata={"env": "ISTATKIT_RATE_LIMIT_MAX_BACKOFF"})
    ban_threshold: int = field(default=3, metadata={"env": "ISTATKIT_RATE_LIMIT_BAN_THRESHOLD"})

    def validate(self) -> Self:
        """Validate rate limit configuration fields."""
        if self.min_delay < 0:
            raise ConfigValidationError("min_delay", self.min_delay, "Must be >= 0.", section="rate_limit")
        if self.jitter_fraction < 0 or self.jitter_fraction >= 1:
            raise ConfigValidationError(
                "jitter_fraction", self.jitter_fraction,
                "Must be >= 0 and less than 1.", section="rate_limit"
            )
        if self.max_retries < 1:
            raise ConfigValidationError("max_retries", self.max_retries, "Must be >= 1.", section="rate_limit")
        if self.initial_backoff <= 0:
            raise ConfigValidationError(
                "initial_backoff", self.initial_backoff, "Must be greater than 0.", section="rate_limit"
            )
        if self.backoff_multiplier < 1:
            raise ConfigValidationError(
                "backoff_multiplier", self.backoff_multiplier, "Must be >= 1.", section="rate_limit"
            )
        if self.max_backoff < self.initial_backoff:
            raise ConfigValidationError(
                "max_backoff", self.max_backoff, "Must be >= initial_backoff.", section="rate_limit"
            )
        if self.ban_threshold < 1:
            raise ConfigValidationError(
                "ban_threshold", self.ban_threshold, "Must be >= 1.", section="rate_limit"
            )
        return self


@dataclass(frozen=True)
class CacheConfig(OverridableConfig):
    """
    Metadata cache configuration.

    Attributes:
        cache_dir: Directory holding the JSON cache files.
            Env var: ISTATKIT_CACHE_DIR

        dataflow_ttl_days: Days before the dataflow catalogue is downloaded again.
            Env var: ISTATKIT_CACHE_DATAFLOW_TTL_DAYS

        codelist_base_ttl_days: Minimum lifetime of a cached codelist.
            Env var: ISTATKIT_CACHE_CODELIST_BASE_TTL_DAYS

        codelist_jitter_days: Width of the window used to stagger codelist expirations.
            Env var: ISTATKIT_CACHE_CODELIST_JITTER_DAYS
    """

    cache_dir: str = field(default="meta", metadata={"env": "ISTATKIT_CACHE_DIR"})
    dataflow_ttl_days: int = field(default=14, metadata={"env": "ISTATKIT_CACHE_DATAFLOW_TTL_DAYS"})
    codelist_base_ttl_days: int = field(default=14, metadata={"env": "ISTATKIT_CACHE_CODELIST_BASE_TTL_DAYS"})
    codelist_jitter_days: int = field(default=14, metadata={"env": "ISTATKIT_CACHE_CODELIST_JITTER_DAYS"})

    def validate(self) -> Self:
        """Validate cache configuration fields."""
        if not self.cache_dir:
            raise ConfigValidationError("cache_dir", self.cache_dir, "Must not be empty.", section="cache")
        if self.dataflow_ttl_days <= 0:
            raise ConfigValidationError(
                "dataflow_ttl_days", self.dataflow_ttl_days, "Must be greater than 0.", section="cache"
            )
        if self.codelist_base_ttl_days <= 0:
            raise ConfigValidationError(
                "codelist_base_ttl_days", self.codelist_base_ttl_days, "Must be greater than 0.", section="cache"
            )
        if self.codelist_jitter_days < 0:
            raise ConfigValidationError(
                "codelist_jitter_days", self.codelist_jitter_days, "Must be >= 0.", section="cache"
            )
        return self


@dataclass(frozen=True)
class DemoConfig(OverridableConfig):
    """
    Configuration for file downloads from the demographic portal (demo.istat.it).

    Attributes:
        base_url: Root of the portal's file tree.
            Env var: ISTATKIT_DEMO_BASE_URL

        cache_dir: Directory where downloaded files are kept.
            Env var: ISTATKIT_DEMO_CACHE_DIR

        max_age_days: Age after which a cached file is checked again when the
            server does not report Last-Modified.
            Env var: ISTATKIT_DEMO_MAX_AGE_DAYS
    """

    base_url: str = field(default="https://demo.istat.it/data", metadata={"env": "ISTATKIT_DEMO_BASE_URL"})
    cache_dir: str = field(default="demo_cache", metadata={"env": "ISTATKIT_DEMO_CACHE_DIR"})
    max_age_days: int = field(default=30, metadata={"env": "ISTATKIT_DEMO_MAX_AGE_DAYS"})

    def validate(self) -> Self:
        """Validate demo configuration fields."""
        _require_http_url(self.base_url, "base_url", "demo")
        if not self.cache_dir:
            raise ConfigValidationError("cache_dir", self.cache_dir, "Must not be empty.", section="demo")
        if self.max_age_days <= 0:
            raise ConfigValidationError(
                "max_age_days", self.max_age_days, "Must be greater than 0.", section="demo"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "timeout").
        value: The resolved value.
        source: "default", "env:VAR_NAME" or "configure".
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """Return value formatted for display, truncated to 50 characters."""
        if self.value is None:
            return "None"
        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."
        return str_value


@dataclass(frozen=True)
class IstatConfig:
    """
    Root configuration aggregating every section.

    Access the active instance via ``ISTAT.config``.

    Attributes:
        http: HTTP and API-surface configuration.
        rate_limit: Throttling, retry and ban-detection configuration.
        cache: Metadata cache configuration.
        demo: Demographic portal configuration.

    Example:
        >>> from istatkit import ISTAT
        >>> ISTAT.config.http.api_surface
        'legacy'
        >>> ISTAT.config.cache.dataflow_ttl_days
        14
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    demo: DemoConfig = field(default_factory=DemoConfig)
    _sources: dict[str, dict[str, str]] = field(default_factory=dict, repr=False, compare=False)

    def with_env_vars(self) -> IstatConfig:
        """Return a new config with ISTATKIT_* environment variables applied on top."""
        sources = self._copy_sources()
        for section_name in _SECTIONS:
            section = getattr(self, section_name)
            for f in fields(section):
                if f.name in section.env_touched_fields():
                    sources.setdefault(section_name, {})[f.name] = f"env:{f.metadata['env']}"

        return IstatConfig(
            http=self.http.with_env_vars(),
            rate_limit=self.rate_limit.with_env_vars(),
            cache=self.cache.with_env_vars(),
            demo=self.demo.with_env_vars(),
            _sources=sources,
        )

    def with_section_overrides(
        self,
        *,
        http: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        cache: dict[str, Any] | None = None,
        demo: dict[str, Any] | None = None,
    ) -> IstatConfig:
        """
        Return a new config with overrides applied to nested sections.

        Example:
            >>> IstatConfig().with_section_overrides(http={"timeout": 60}).http.timeout
            60
        """
        overrides = {"http": http, "rate_limit": rate_limit, "cache": cache, "demo": demo}
        sources = self._copy_sources()
        for section_name, section_overrides in overrides.items():
            for name, value in (section_overrides or {}).items():
                if value is not None:
                    sources.setdefault(section_name, {})[name] = "configure"

        return IstatConfig(
            http=self.http.with_overrides(http or {}),
            rate_limit=self.rate_limit.with_overrides(rate_limit or {}),
            cache=self.cache.with_overrides(cache or {}),
            demo=self.demo.with_overrides(demo or {}),
            _sources=sources,
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return every section's fields with their resolved value and source."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section = getattr(self, section_name)
            section_sources = self._sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section)
            ]
        return result

    def validate(self) -> IstatConfig:
        self.http.validate()
        self.rate_limit.validate()
        self.cache.validate()
        self.demo.validate()
        return self

    def _copy_sources(self) -> dict[str, dict[str, str]]:
        return {section: dict(flds) for section, flds in self._sources.items()}


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _ISTAT:
    """
    Singleton holding the active configuration.

    Use ``ISTAT.configure()`` to customize settings and ``ISTAT.config``
    to read them.

    Example:
        >>> from istatkit import ISTAT
        >>> ISTAT.configure(rate_limit={"min_delay": 20})
        >>> ISTAT.config.rate_limit.min_delay
        20
    """

    def __init__(self) -> None:
        self._config: IstatConfig = IstatConfig().with_env_vars()

    def configure(
        self,
        *,
        http: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        cache: dict[str, Any] | None = None,
        demo: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> IstatConfig:
        """
        Configure client settings.

        Call at application startup. Fields not provided keep their env var
        value (when allow_env_override=True) or their default.

        Args:
            http: HTTP config overrides (timeout, api_surface, base URLs, ...).
            rate_limit: Rate limit overrides (min_delay, max_retries, backoff, ...).
            cache: Cache overrides (cache_dir, TTLs).
            demo: Demographic portal overrides.
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured IstatConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = IstatConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            http=http,
            rate_limit=rate_limit,
            cache=cache,
            demo=demo,
        )
        config = self.validate()
        self._sync_shared_limiter()
        return config

    @property
    def config(self) -> IstatConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> IstatConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = IstatConfig().with_env_vars()
        config = self.validate()
        self._sync_shared_limiter()
        return config

    def _sync_shared_limiter(self) -> None:
        # Transports keep a reference to the shared limiter, so it is updated in place
        from istatkit._rate_limit import apply_rate_limit_config

        apply_rate_limit_config(self._config.rate_limit)

    def validate(self) -> IstatConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        return self._config.validate()

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: ``ISTAT.explain(logger.info)``
        """
        name_width = 25
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("istatkit configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"ISTAT(config={self._config!r})"


# Global singleton instance - always reflects current configuration
ISTAT: _ISTAT = _ISTAT()
ISTAT.validate()  # Validate defaults + env vars on module load
