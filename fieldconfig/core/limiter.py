from slowapi import Limiter
from slowapi.util import get_remote_address

from fieldconfig.core.settings import settings

# Management and evaluate endpoints share one budget per client address.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    storage_uri=settings.redis_url,
)

__all__ = ["limiter"]
