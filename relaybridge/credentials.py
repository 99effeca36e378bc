# relaybridge/credentials.py
"""
Credential templating.

Requesters write placeholder tokens (e.g. "{{BREVO_KEY}}") where a secret
belongs. substitute() swaps placeholders for secrets right before dispatch;
redact() swaps secrets back for placeholders before anything leaves the bridge
(logs, dedup rows, ledger writes). Both are plain string replacement, applied
longest-token-first so overlapping tokens resolve deterministically.
"""

from typing import Any, Dict, List, Optional, Tuple

from relaybridge.monitoring import logger


class CredentialTemplater:
    def __init__(self, credentials: Optional[List[Tuple[str, str, str]]] = None):
        """credentials: (integration name, placeholder, secret) triples."""
        self._pairs: List[Tuple[str, str, str]] = []
        for name, placeholder, secret in credentials or []:
            if not placeholder or not secret:
                logger.warning(
                    "Credential incomplete, substitution disabled",
                    extra={"integration": name, "has_placeholder": bool(placeholder), "has_secret": bool(secret)},
                )
                continue
            if placeholder == secret:
                continue
            self._pairs.append((name, placeholder, secret))

    @classmethod
    def from_settings(cls, settings) -> "CredentialTemplater":
        return cls(settings.credentials)

    @property
    def integrations(self) -> List[str]:
        return [name for name, _, _ in self._pairs]

    def substitute(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        for name, placeholder, secret in sorted(self._pairs, key=lambda p: -len(p[1])):
            if placeholder in text:
                text = text.replace(placeholder, secret)
                logger.debug("Substituted credential", extra={"integration": name})
        return text

    def redact(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        for _, placeholder, secret in sorted(self._pairs, key=lambda p: -len(p[2])):
            if secret in text:
                text = text.replace(secret, placeholder)
        return text

    def substitute_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        return {k: self.substitute(v) if isinstance(v, str) else v for k, v in headers.items()}

    def redact_value(self, value: Any) -> Any:
        """Redact every string inside a JSON-like value (keys included)."""
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {self.redact(k) if isinstance(k, str) else k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.redact_value(v) for v in value]
        return value

    def contains_secret(self, text: str) -> bool:
        return any(secret in text for _, _, secret in self._pairs)
