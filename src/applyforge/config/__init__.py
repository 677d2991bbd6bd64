"""
applyforge config package public API.

Purpose
- Export config loading/validation entrypoints, typed settings, and public error types.

Functional requirements
- Support loading from ``applyforge.toml`` + ``APPLYFORGE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from applyforge.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_name_for_path,
    load_config,
    normalize_paths,
)
from applyforge.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ApplyforgeConfig,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from applyforge.config.settings import (
    ApplySettings,
    CommandTemplates,
    RebootSettings,
    StepTimeouts,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ApplySettings",
    "ApplyforgeConfig",
    "CommandTemplates",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "PATH_FIELDS",
    "RebootSettings",
    "StepTimeouts",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
