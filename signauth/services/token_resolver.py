"""
Public token resolution.

Maps an opaque link token to its signature request. Unknown and malformed
tokens take the same path (hash, lookup, compare) and fail with the same
NotFound, so a caller cannot tell them apart.
"""
import logging
import re
from typing import Optional

from signauth.config import Settings, get_settings
from signauth.exceptions import NotFound
from signauth.models import SignatureRequest
from signauth.store.base import SignatureStore
from signauth.utils.logging import fingerprint
from signauth.utils.security import hash_public_token, tokens_match

logger = logging.getLogger(__name__)

# token_urlsafe(32) yields 43 chars; accept a generous range of the same alphabet
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
MAX_TOKEN_LENGTH = 512


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and TOKEN_PATTERN.match(token) is not None


class TokenResolver:

    def __init__(self, store: SignatureStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def resolve(self, public_token: str) -> SignatureRequest:
        """
        Raises:
            NotFound: token is unknown or malformed
        """
        token = (public_token or "")[:MAX_TOKEN_LENGTH]
        well_formed = is_well_formed_token(token)
        token_hash = hash_public_token(token, self.settings.signing_token_salt)

        request = await self.store.get_request_by_token_hash(token_hash)
        if (
            request is None
            or not well_formed
            or not tokens_match(token, request.token_hash, self.settings.signing_token_salt)
        ):
            logger.info(f"Token {fingerprint(token, 'tok_')} did not resolve")
            raise NotFound()

        return request
