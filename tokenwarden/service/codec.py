from __future__ import annotations

import base64
import re
from typing import Dict, Optional

from tokenwarden.config import Environment
from tokenwarden.service.signer import Signer

ENVIRONMENT_PREFIXES: Dict[Environment, str] = {
    Environment.PRODUCTION: "tw_live_",
    Environment.TEST: "tw_test_",
    Environment.DEVELOPMENT: "tw_dev_",
    Environment.SERVICE: "svc_",
}

RECOGNIZED_PREFIXES = tuple(ENVIRONMENT_PREFIXES.values())

_BEARER_RE = re.compile(r"^\s*bearer\s+", re.IGNORECASE)


def prefix_for(environment: Environment) -> str:
    return ENVIRONMENT_PREFIXES[Environment(environment)]


def strip_bearer(value: Optional[str]) -> str:
    """Accept raw ``Authorization`` header values as well as bare tokens."""
    if not value:
        return ""
    return _BEARER_RE.sub("", value, count=1).strip()


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


class TokenCodec:
    """Builds the opaque bearer string: ``prefix + b64url(id_ts_signature)``.

    Claims are never decoded back out of the string; validation always
    re-reads state from storage by hash.
    """

    def __init__(self, signer: Signer, prefix: str) -> None:
        if prefix not in RECOGNIZED_PREFIXES:
            raise ValueError(f"unrecognized token prefix: {prefix!r}")
        self.signer = signer
        self.prefix = prefix

    def encode(
        self,
        token_id: str,
        subject_id: str,
        service_name: Optional[str],
        timestamp_ms: int,
    ) -> str:
        payload = f"{token_id}:{subject_id}:{service_name or ''}:{timestamp_ms}"
        signature = self.signer.sign(payload.encode())
        body = f"{token_id}_{timestamp_ms}_{signature}"
        return f"{self.prefix}{_b64url(body.encode())}"

    @staticmethod
    def looks_well_formed(token: Optional[str]) -> bool:
        """Cheap format gate; says nothing about expiry, revocation or existence."""
        if not token or not isinstance(token, str):
            return False
        for prefix in RECOGNIZED_PREFIXES:
            if token.startswith(prefix):
                return len(token) > len(prefix)
        return False
