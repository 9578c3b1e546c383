import os
import re
from pathlib import Path


# ---------------------------------------------------
# Errors
# ---------------------------------------------------

class ConfigurationError(ValueError):
    """Settings, credentials or input layout are unusable; the run must stop."""


class CredentialError(ConfigurationError):
    """An explicitly configured external credential was rejected."""


# ---------------------------------------------------
# Project root + path helpers
# ---------------------------------------------------

def _find_project_root(start: Path, max_depth: int = 8):
    candidate = start if start.is_dir() else start.parent
    for _ in range(max_depth):
        if (candidate / "pyproject.toml").exists():
            return candidate
        if (candidate / "src" / "survey_qc").exists():
            return candidate
        if (candidate / "config" / "pipeline_settings.yaml").exists():
            return candidate
        if candidate.parent == candidate:
            break
        candidate = candidate.parent
    return None


def _expand_user_tokens(path: str) -> str:
    if "{user}" not in path:
        return path
    user = os.environ.get("USER") or os.environ.get("USERNAME")
    if not user:
        return path
    return path.replace("{user}", user)


def _expand_path_tokens(value: str) -> str:
    if value is None:
        return value
    value = _expand_user_tokens(value)
    value = os.path.expandvars(value)
    return str(Path(value).expanduser())


def _get_project_root(start: Path = None):
    env_root = os.environ.get("PROJECT_ROOT") or os.environ.get("SURVEY_QC_PROJECT_ROOT")
    if env_root:
        return Path(_expand_path_tokens(env_root))

    base = start or Path(__file__).resolve()
    root = _find_project_root(base)
    if root:
        return root

    return base if base.is_dir() else base.parent


def resolve_settings_path(settings_path, project_root: Path = None, pipeline_dir: Path = None) -> Path:
    p = Path(settings_path)
    if p.is_absolute():
        return p
    pipeline_dir = pipeline_dir or Path(__file__).resolve().parent
    project_root = project_root or _get_project_root(start=pipeline_dir)

    candidate = project_root / p
    if candidate.exists():
        return candidate

    candidate = pipeline_dir / p
    if candidate.exists():
        return candidate

    return project_root / p


def resolve_base_dir(settings: dict, settings_path: str = None, project_root: Path = None, pipeline_dir: Path = None) -> Path:
    pipeline_dir = pipeline_dir or Path(__file__).resolve().parent
    project_root = project_root or _get_project_root(start=pipeline_dir)
    if settings_path:
        resolved_settings = resolve_settings_path(settings_path, project_root=project_root, pipeline_dir=pipeline_dir)
        project_root = _find_project_root(resolved_settings) or project_root

    paths_cfg = (settings or {}).get("paths", {}) or {}
    base_dir_cfg = paths_cfg.get("base_dir")

    if not base_dir_cfg:
        return project_root

    base_dir = Path(_expand_path_tokens(str(base_dir_cfg)))
    if base_dir.is_absolute():
        return base_dir

    return (project_root / base_dir).resolve()


def resolve_path(base_dir, relative_path):
    if relative_path is None:
        return None
    base = Path(base_dir)
    if not base.is_absolute():
        base = base.resolve()
    p = Path(_expand_path_tokens(str(relative_path)))
    if p.is_absolute():
        return p
    return base / p


def load_yaml(path):
    if path is None:
        return {}
    p = Path(path)
    if not p.exists():
        return {}
    try:
        import yaml
    except Exception as exc:
        raise ImportError("Missing dependency: pyyaml. Install with `pip install pyyaml`.") from exc
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


# ---------------------------------------------------
# Defaults
# ---------------------------------------------------

PROVINCE_REGIONS = {
    "1": "Alberta",
    "2": "British Columbia",
    "3": "Manitoba",
    "4": "New Brunswick",
    "5": "Newfoundland and Labrador",
    "6": "Nova Scotia",
    "7": "Ontario",
    "8": "Prince Edward Island",
    "9": "Quebec",
    "10": "Saskatchewan",
    "11": "Northwest Territories",
    "12": "Nunavut",
    "13": "Yukon",
    "14": "Outside Canada",
}

GENDER_LABELS = {
    "1": "Man",
    "2": "Woman",
}


def _default_settings():
    return {
        "study": {
            "name": "Youth wellbeing panel",
            # Single-region design: every valid record carries this strata code.
            "region_code": "1",
        },
        "columns": {
            "id": "response_id",
            "tracking_code": "tracking_code",
            "started_at": "started_at",
            "exited_at": "exited_at",
            "disqualified_at": "disqualified_at",
            "age": "age",
            "screener_age": "screener_age",
            "gender": "gender",
            "province": "province",
            "strata_region": "strata_region",
            "include": "include",
            "withdrawn": "withdrawn",
            "ip_address": "ip_address",
            "ip_region": "ip_region",
        },
        "required_columns": ["id", "started_at", "exited_at", "gender", "province", "strata_region"],
        "speeding": {
            "median_fraction": 0.3,
        },
        "attention_checks": {
            "repeat_item": {
                "primary": "distress_5",
                "check": "distress_attn",
            },
            "instructed_item": {
                "check": "wellbeing_attn",
                "forbidden_codes": ["1", "2", "4", "5", "6"],
            },
        },
        "province_regions": dict(PROVINCE_REGIONS),
        "straightlining": {
            "ignore_value": "99",
            "ignore_na": True,
            "threshold": 2,
            "instruments": {
                "distress": {"pattern": r"^distress_(\d+|attn)$", "exclude": ["distress_attn"]},
                "wellbeing": {"pattern": r"^wellbeing_(\d+|attn)$", "exclude": ["wellbeing_attn"]},
                "support": {"pattern": r"^support_\d+$", "exclude": []},
            },
        },
        "scales": {
            "distress": {"pattern": r"^distress_\d+$"},
            "wellbeing": {
                "pattern": r"^wellbeing_\d+$",
                "subscales": {
                    "emotional": [1, 4, 7, 10, 13],
                    "social": [2, 5, 8, 11, 14],
                    "psychological": [3, 6, 9, 12, 15],
                },
            },
            "support": {"pattern": r"^support_\d+$"},
        },
        "quota": {
            "invalid_gender_codes": ["3", "4", "5"],
            "province_labels": dict(PROVINCE_REGIONS),
            "gender_labels": dict(GENDER_LABELS),
            "include_totals": True,
        },
        "geo": {
            "enabled": True,
            "base_url": "https://ipinfo.io",
            "batch_size": 100,
            "timeout_seconds": 30,
        },
        "analytics": {
            "enabled": True,
            "base_url": "https://analyticsdata.googleapis.com/v1beta",
            "tracking_dimension": "customUser:tracking_code",
            "start_date": "2024-01-01",
            "end_date": "today",
            "timeout_seconds": 30,
        },
        "publish": {
            "enabled": True,
            "base_url": "https://sheets.googleapis.com/v4",
            "sheet_name": "Quota",
            "timeout_seconds": 30,
        },
        "survey_source": {
            "timeout_seconds": 60,
        },
        "credentials": {
            "ipinfo_token": "IPINFO_TOKEN",
            "ga_property_id": "GA_PROPERTY_ID",
            "ga_access_token": "GA_ACCESS_TOKEN",
            "sheets_document_id": "QUOTA_SHEET_ID",
            "sheets_access_token": "GOOGLE_SHEETS_TOKEN",
            "survey_export_url": "SURVEY_EXPORT_URL",
            "survey_api_token": "SURVEY_API_TOKEN",
        },
        "output": {
            "write_snapshot": True,
            "update_workbook": True,
            "update_metrics_cache": True,
            "update_raw_cache": True,
            "raw_filename": "raw.csv",
            "processed_filename": "processed.csv",
            "final_filename": "final.csv",
            "quota_filename": "quota.csv",
            "reason_counts_filename": "reason_counts.csv",
        },
        "paths": {
            # base_dir is resolved relative to the project root (or absolute)
            "base_dir": ".",
            "raw_cache_csv": "data/raw/responses.csv",
            "workbook": "data/decisions.xlsx",
            "analytics_cache_csv": "data/analytics_cache.csv",
            "output_runs": "outputs/runs",
            "env_file": ".env",
        },
    }


def _deep_merge(base: dict, override: dict) -> dict:
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def _stringify_keys(mapping: dict) -> dict:
    # YAML reads unquoted codes as ints.
    return {str(k): str(v) for k, v in (mapping or {}).items()}


def validate_settings(settings: dict) -> dict:
    columns = settings.get("columns")
    if not isinstance(columns, dict) or not columns.get("id"):
        raise ConfigurationError("Invalid settings: columns.id must name the record identifier column.")
    if "paths" not in settings or not isinstance(settings["paths"], dict):
        raise ConfigurationError("Invalid settings: paths must be a mapping.")

    fraction = settings.get("speeding", {}).get("median_fraction")
    try:
        fraction = float(fraction)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid settings: speeding.median_fraction must be a number, got {fraction!r}.")
    if fraction <= 0:
        raise ConfigurationError("Invalid settings: speeding.median_fraction must be positive.")

    instruments = settings.get("straightlining", {}).get("instruments")
    if not isinstance(instruments, dict) or not instruments:
        raise ConfigurationError("Invalid settings: straightlining.instruments must be a non-empty mapping.")
    for name, spec in instruments.items():
        if not isinstance(spec, dict) or not spec.get("pattern"):
            raise ConfigurationError(f"Invalid settings: straightlining.instruments.{name}.pattern is required.")

    for key in ("province_regions",):
        settings[key] = _stringify_keys(settings.get(key))
    quota_cfg = settings.setdefault("quota", {})
    quota_cfg["province_labels"] = _stringify_keys(quota_cfg.get("province_labels"))
    quota_cfg["gender_labels"] = _stringify_keys(quota_cfg.get("gender_labels"))
    quota_cfg["invalid_gender_codes"] = [str(c) for c in quota_cfg.get("invalid_gender_codes") or []]
    instructed = settings.get("attention_checks", {}).get("instructed_item") or {}
    if "forbidden_codes" in instructed:
        instructed["forbidden_codes"] = [str(c) for c in instructed.get("forbidden_codes") or []]
    settings["study"]["region_code"] = str(settings["study"].get("region_code"))
    return settings


def load_settings(settings_path: str = "config/pipeline_settings.yaml", validate: bool = True, apply_defaults: bool = True):
    pipeline_dir = Path(__file__).resolve().parent
    project_root = _get_project_root(start=pipeline_dir)
    resolved = resolve_settings_path(settings_path, project_root=project_root, pipeline_dir=pipeline_dir)
    data = load_yaml(resolved)

    if apply_defaults:
        merged = _deep_merge(_default_settings(), data)
    else:
        merged = data

    if validate:
        merged = validate_settings(merged)

    return merged


# ---------------------------------------------------
# Credentials
# ---------------------------------------------------

def load_env_file(settings: dict, base_dir: Path = None) -> None:
    """Load a .env file into os.environ without overriding variables already set."""
    env_rel = (settings.get("paths", {}) or {}).get("env_file")
    if not env_rel:
        return
    base_dir = base_dir or resolve_base_dir(settings)
    env_path = resolve_path(base_dir, env_rel)
    if env_path is None or not env_path.exists():
        return
    from dotenv import load_dotenv
    load_dotenv(env_path, override=False)


def resolve_credentials(settings: dict, environ=None) -> dict:
    """
    Map each credential key to its value from the environment.

    Unset or blank variables resolve to None so callers can skip the
    corresponding integration instead of calling it with empty credentials.
    """
    environ = os.environ if environ is None else environ
    names = (settings or {}).get("credentials", {}) or {}
    out = {}
    for key, env_name in names.items():
        value = environ.get(env_name) if env_name else None
        value = value.strip() if isinstance(value, str) else value
        out[key] = value or None
    return out


# ---------------------------------------------------
# Instrument column resolution
# ---------------------------------------------------

def _item_number(column: str):
    match = re.search(r"(\d+)$", column)
    return int(match.group(1)) if match else None


def resolve_instrument_columns(columns, instruments_cfg: dict) -> dict:
    """
    Resolve straight-lining instruments to explicit, ordered column lists.

    Columns keep their order in the record table; names listed under
    `exclude` are dropped after pattern matching.
    """
    resolved = {}
    columns = [str(c) for c in columns]
    for name, spec in (instruments_cfg or {}).items():
        pattern = re.compile(spec["pattern"])
        excluded = set(spec.get("exclude") or [])
        cols = [c for c in columns if pattern.search(c) and c not in excluded]
        if not cols:
            raise ConfigurationError(
                f"Instrument '{name}' matched no columns with pattern {spec['pattern']!r}."
            )
        resolved[name] = cols
    return resolved


def resolve_scale_items(columns, scales_cfg: dict) -> dict:
    """
    Resolve scale definitions into {scale: {"items": [...], "subscales": {sub: [...]}}}.

    Items are ordered by trailing item number; subscale entries are 1-based
    positions in that order.
    """
    resolved = {}
    columns = [str(c) for c in columns]
    for name, spec in (scales_cfg or {}).items():
        pattern = re.compile(spec["pattern"])
        items = [c for c in columns if pattern.search(c)]
        if not items:
            raise ConfigurationError(f"Scale '{name}' matched no columns with pattern {spec['pattern']!r}.")
        items.sort(key=lambda c: (_item_number(c) is None, _item_number(c) or 0, c))

        subscales = {}
        for sub, positions in (spec.get("subscales") or {}).items():
            picked = []
            for pos in positions:
                idx = int(pos) - 1
                if idx < 0 or idx >= len(items):
                    raise ConfigurationError(
                        f"Subscale '{name}.{sub}' refers to item {pos} but '{name}' has {len(items)} items."
                    )
                picked.append(items[idx])
            subscales[sub] = picked

        resolved[name] = {"items": items, "subscales": subscales}
    return resolved


