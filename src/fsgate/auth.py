"""Access gate for fsgate.

The gate reads the access key id out of the ``Credential=`` field of an
AWS SigV4 style ``Authorization`` header and checks it against a configured
allow-list.

The signature itself is NOT verified: the identity is asserted by the
client, not proven. Anyone who knows an allow-listed access key id can use
the gateway. Deploy it only where that trust model is acceptable.
"""

import logging
import re
from collections.abc import Iterable

from fsgate.errors import AccessDenied

logger = logging.getLogger(__name__)

# Example: AWS4-HMAC-SHA256 Credential=AKID/20260222/us-east-1/s3/aws4_request, ...
CREDENTIAL_RE = re.compile(
    r"(?:^|[\s,])Credential=(?P<access_key>[^/,\s]+)/"
)


def extract_access_key(authorization: str | None) -> str | None:
    """Return the access key id claimed by an Authorization header.

    The id is the substring after ``Credential=`` up to the first ``/``.

    Args:
        authorization: The raw header value, possibly missing.

    Returns:
        The claimed access key id, or None if none can be extracted.
    """
    if not authorization:
        return None
    match = CREDENTIAL_RE.search(authorization)
    if match is None:
        return None
    return match.group("access_key")


class AccessGate:
    """Accepts or rejects requests by their claimed access key.

    Attributes:
        allowed: The set of allow-listed access key ids.
    """

    def __init__(self, allowed_access_keys: Iterable[str]) -> None:
        self.allowed = frozenset(allowed_access_keys)

    def check(self, authorization: str | None) -> str:
        """Admit a request or raise AccessDenied.

        Args:
            authorization: The request's Authorization header value.

        Returns:
            The admitted access key id.

        Raises:
            AccessDenied: If no access key can be extracted or it is not
                allow-listed.
        """
        access_key = extract_access_key(authorization)
        if access_key is None:
            logger.info("Rejected request without a usable credential")
            raise AccessDenied("Missing or malformed Authorization credential.")
        if access_key not in self.allowed:
            logger.info("Rejected request for unknown access key", extra={"access_key": access_key})
            raise AccessDenied()
        return access_key
