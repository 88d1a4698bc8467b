"""
Redis-based rate limiting for API endpoints.
Implements a fixed window counter per view and client IP.
"""
import logging

import redis
from django.conf import settings
from rest_framework.exceptions import Throttled

logger = logging.getLogger(__name__)

redis_client = None

# Initialize Redis client
if getattr(settings, 'RATE_LIMIT_ENABLED', False):
    try:
        redis_client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        redis_client.ping()
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        redis_client = None


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


class RateLimitMixin:
    """
    Mixin for DRF views that limits write requests per client IP.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60

    Exceeding the limit raises ``Throttled`` so DRF renders the 429 with a
    ``Retry-After`` header. Redis errors fail open.
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60
    rate_limit_methods = ('POST',)

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self._rate_limit_count = None
        self._rate_limit_ttl = None

        if redis_client is None or request.method not in self.rate_limit_methods:
            return

        try:
            client_ip = get_client_ip(request)
            key = f"rate_limit:{self.__class__.__name__}:{client_ip}"

            current_count = redis_client.incr(key)

            # Set expiry on first request
            if current_count == 1:
                redis_client.expire(key, self.rate_limit_window_seconds)

            ttl = redis_client.ttl(key)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return

        if current_count > self.rate_limit_max_requests:
            raise Throttled(
                wait=max(ttl, 0),
                detail=(
                    f'Maximum {self.rate_limit_max_requests} requests per '
                    f'{self.rate_limit_window_seconds} seconds allowed.'
                )
            )

        self._rate_limit_count = current_count
        self._rate_limit_ttl = ttl

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        if getattr(self, '_rate_limit_count', None) is not None:
            remaining = max(0, self.rate_limit_max_requests - self._rate_limit_count)
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = str(remaining)
            response['X-RateLimit-Reset'] = str(self._rate_limit_ttl)
        return response
