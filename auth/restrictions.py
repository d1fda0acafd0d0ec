"""
auth/restrictions.py -- Acceptance rules applied to verified ID token claims.

Three independent rule sets, each skipped when empty:

  user_restrictions       -- regex patterns; the principal name (upn, falling
                             back to the subject) must match at least one.
  allowed_email_domains   -- the email claim's domain must be listed.
  allowed_tenant_ids      -- the tid claim must be listed.

An invalid regex never grants access: it is logged and treated as a
non-matching pattern.

Layer rule: no imports from api/, web/, or loginflow/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from auth.models import IdentityClaims
from core.config import Settings

logger = logging.getLogger("oidclogin.auth.restrictions")


@dataclass
class Restrictions:
    patterns: list[str] = field(default_factory=list)
    case_sensitive: bool = True
    email_domains: list[str] = field(default_factory=list)
    tenant_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> Restrictions:
        return cls(
            patterns=list(settings.user_restrictions),
            case_sensitive=settings.user_restrictions_case_sensitive,
            email_domains=[d.lower() for d in settings.allowed_email_domains],
            tenant_ids=list(settings.allowed_tenant_ids),
        )

    def check(self, claims: IdentityClaims) -> bool:
        """Return True if the claims pass every configured rule set."""
        return self._check_patterns(claims) and self._check_domain(claims) and self._check_tenant(claims)

    def _check_patterns(self, claims: IdentityClaims) -> bool:
        if not self.patterns:
            return True
        principal = claims.username_hint or claims.subject
        flags = 0 if self.case_sensitive else re.IGNORECASE
        for pattern in self.patterns:
            try:
                if re.search(pattern, principal, flags):
                    return True
            except re.error:
                logger.warning("Ignoring invalid user restriction pattern %r", pattern)
        return False

    def _check_domain(self, claims: IdentityClaims) -> bool:
        if not self.email_domains:
            return True
        if not claims.email or "@" not in claims.email:
            return False
        return claims.email.rsplit("@", 1)[1].lower() in self.email_domains

    def _check_tenant(self, claims: IdentityClaims) -> bool:
        if not self.tenant_ids:
            return True
        return claims.tenant_id in self.tenant_ids
