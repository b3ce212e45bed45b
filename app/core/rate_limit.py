"""Per-route rate limits using slowapi.

The origin sliding window in `app.core.middleware` guards the generate
route; these decorators add ceilings on individual routes that never reach
a provider (e.g. extraction).
"""

from slowapi import Limiter

from app.core.dependencies import client_origin

# Rate limiter instance, keyed the same way as the origin limiter
limiter = Limiter(key_func=client_origin)
