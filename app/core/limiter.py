"""
Rate limiting for mutation routes.

Keyed by the Authorization header, so each token gets its own budget.
"""
from slowapi import Limiter

from app.features.users.dependencies import get_authorization_header


limiter = Limiter(key_func=get_authorization_header)
