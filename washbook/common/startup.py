"""Boot-time summary of the effective settings, with credentials masked."""

from typing import Any

from washbook.common.config import CommonSettings
from washbook.common.logging import logger

# Connection strings carry passwords, so they are masked with the keys.
_MASKED_FIELDS = frozenset(
    {"api_key", "postgres_dsn", "redis_url", "stripe_secret_key", "stripe_webhook_secret"}
)


def _display(name: str, value: Any) -> Any:
    if name in _MASKED_FIELDS:
        return "<set>" if value else "<unset>"
    return value


def log_startup_config(config: CommonSettings, fields: list[str], **derived: Any) -> dict[str, Any]:
    """Log the named settings fields plus values derived from them.

    `derived` carries what a service computes from its settings at boot,
    such as the gateway key mode or the effective validation charge.
    """

    summary: dict[str, Any] = {"service": config.service_name}
    for name in fields:
        summary[name] = _display(name, getattr(config, name))
    summary.update(derived)
    logger.info("startup_config=%s", summary)
    return summary
