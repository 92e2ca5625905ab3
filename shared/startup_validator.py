"""
Startup configuration validation module.

Catches misconfigurations at process start (fail-fast) rather than when the
first donor tries to pay.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    try:
        await validate_startup_config(redis_client)
    except StartupValidationError as e:
        logger.critical(f"Startup blocked: {e}")
        raise
"""

import logging

import redis.asyncio as redis

from shared.config import JWT_SECRET_PLACEHOLDER, get_settings
from shared.redis_client import ping_redis

logger = logging.getLogger(__name__)

MIN_JWT_SECRET_LENGTH = 16


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


async def validate_startup_config(redis_client: "redis.Redis | None" = None) -> dict[str, bool]:
    """
    Validate all critical configuration at startup.

    Performs tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup

    Args:
        redis_client: Client to probe; the Redis check is skipped when None

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    # 1. JWT secret must be set (tokens are verified with it)
    if settings.JWT_SECRET == JWT_SECRET_PLACEHOLDER:
        critical_failures.append("JWT_SECRET is placeholder - set the token signing secret")
        results["jwt_secret"] = False
    elif len(settings.JWT_SECRET) < MIN_JWT_SECRET_LENGTH:
        critical_failures.append(
            f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
        )
        results["jwt_secret"] = False
    else:
        results["jwt_secret"] = True
        logger.info("  [OK] JWT secret configured")

    # 2. Database URL must point at PostgreSQL (row locks rely on FOR UPDATE)
    if not settings.DATABASE_URL.startswith("postgresql"):
        critical_failures.append(
            "DATABASE_URL must be a PostgreSQL URL: postgresql+asyncpg://..."
        )
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True
        if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
            logger.warning(
                "DATABASE_URL should use asyncpg driver: postgresql+asyncpg://..."
            )

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    # 3. Stripe secret key (card donations)
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set - card donations disabled")
        results["stripe_secret_key"] = False
    else:
        results["stripe_secret_key"] = True
        logger.info("  [OK] Stripe secret key configured")

    # 4. Stripe webhook secret (payment confirmations)
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not set - payment webhook will answer 500"
        )
        results["stripe_webhook_secret"] = False
    else:
        results["stripe_webhook_secret"] = True
        logger.info("  [OK] Stripe webhook secret configured")

    # 5. Redis reachable (rate limiting degrades to pass-through otherwise)
    if redis_client is not None:
        if await ping_redis(redis_client):
            results["redis_connection"] = True
            logger.info("  [OK] Redis reachable")
        else:
            logger.warning("Redis unreachable - rate limiting disabled until it recovers")
            results["redis_connection"] = False

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results
