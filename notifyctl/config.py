import os

DEFAULT_CONFIG = {
    "default_country_code": "55",
    "default_delay_minutes": "10",
    "tick_interval_seconds": "60",
    "tick_batch_size": "10",
    "tick_lease_seconds": "300",
    "template_name": "avaliacao_pos_consulta_v1",
    "template_language": "pt_BR",
    "graph_api_version": "v21.0",
    "delivery_timeout_seconds": "20",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# environment variables that take precedence over the config table
ENV_OVERRIDES = {
    "default_country_code": "DEFAULT_COUNTRY_CODE",
    "template_name": "WHATSAPP_TEMPLATE_NAME",
}

# must parse as int when set
INT_CONFIG_KEYS = {
    "default_delay_minutes",
    "tick_interval_seconds",
    "tick_batch_size",
    "tick_lease_seconds",
    "delivery_timeout_seconds",
}


def db_path() -> str:
    return os.environ.get("NOTIFYCTL_DB", "notify.db")


def config_int(cfg, key: str) -> int:
    """Read an integer tunable, falling back to the default on bad values."""
    try:
        return int(cfg.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        return int(DEFAULT_CONFIG[key])
