from slowapi import Limiter
from slowapi.util import get_remote_address

from storefront.core.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://" if settings.ENVIRONMENT != "production" else settings.REDIS_URL,
)
