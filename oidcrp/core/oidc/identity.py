"""Identity resolution policy.

Maps the validated claims of a login onto a local account decision:
log in an existing account, link one, create one, or reject the login.
Resolution is deterministic for the same claims, configuration and lookup
result; the host performs the resulting action.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from oidcrp.core.config import ClientConfig
from oidcrp.core.errors import IdentityRejectReason

if TYPE_CHECKING:
    from oidcrp.core.oidc.client import TokenResponse

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


class IdentityAction(StrEnum):
    """What the host should do with a resolved identity."""

    LOGIN = "login"
    CREATE = "create"
    LINK = "link"
    REJECT = "reject"


@dataclass(frozen=True)
class LocalIdentityRef:
    """Reference to a local account, as returned by the host lookup."""

    id: str
    linked: bool = True


@dataclass(frozen=True)
class ResolvedIdentity:
    """Outcome of identity resolution."""

    action: IdentityAction
    subject_identity: str = ""
    subject: str = ""
    display_name: str = ""
    username: str = ""
    email: str = ""
    raw_claims: Mapping[str, Any] = field(default_factory=dict)
    reason: IdentityRejectReason | None = None
    local_ref: LocalIdentityRef | None = None

    @property
    def rejected(self) -> bool:
        return self.action == IdentityAction.REJECT


@runtime_checkable
class IdentityHost(Protocol):
    """Account operations the host application provides."""

    def find_local_identity(self, subject_identity: str) -> LocalIdentityRef | None:
        """Look up the local account matching an identity claim value."""
        ...

    def create_local_identity(self, identity: ResolvedIdentity) -> LocalIdentityRef:
        """Create a local account bound to the identity."""
        ...

    def update_local_identity(self, ref: LocalIdentityRef, identity: ResolvedIdentity) -> None:
        """Refresh profile data and bind the account to the identity."""
        ...

    def store_tokens(self, ref: LocalIdentityRef, tokens: TokenResponse) -> None:
        """Persist the token response for the account."""
        ...

    def load_tokens(self, ref: LocalIdentityRef) -> TokenResponse | None:
        """Return the stored token response for the account, if any."""
        ...


class TemplateError(ValueError):
    """Raised when a template names a claim the login did not provide."""

    def __init__(self, placeholder: str) -> None:
        self.placeholder = placeholder
        super().__init__(f"Unresolved placeholder '{{{placeholder}}}'")


def render_template(template: str, claims: Mapping[str, Any]) -> str:
    """Substitute ``{claim}`` placeholders with claim values.

    Raises:
        TemplateError: If a placeholder has no non-empty claim value.
    """

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        value = claims.get(name)
        if value is None or value == "":
            raise TemplateError(name)
        return str(value)

    return _PLACEHOLDER.sub(substitute, template)


def template_claims(template: str) -> set[str]:
    """Claim names referenced by a template."""
    return {name.strip() for name in _PLACEHOLDER.findall(template)}


def required_claims(config: ClientConfig) -> set[str]:
    """Claims identity resolution reads for a configuration."""
    needed = {config.identity_key, config.nickname_key}
    needed |= template_claims(config.email_format)
    needed |= template_claims(config.display_name_format)
    return needed


def _reject(
    reason: IdentityRejectReason,
    claims: Mapping[str, Any],
    subject_identity: str = "",
    local_ref: LocalIdentityRef | None = None,
) -> ResolvedIdentity:
    logger.warning(f"Identity rejected: {reason.value}")
    return ResolvedIdentity(
        action=IdentityAction.REJECT,
        subject_identity=subject_identity,
        subject=str(claims.get("sub", "")),
        raw_claims=dict(claims),
        reason=reason,
        local_ref=local_ref,
    )


def resolve_identity(
    claims: Mapping[str, Any],
    config: ClientConfig,
    find_local_identity: Callable[[str], LocalIdentityRef | None],
) -> ResolvedIdentity:
    """Decide which local account action a login results in.

    Args:
        claims: Merged ID token and userinfo claims.
        config: Client configuration with the identity settings.
        find_local_identity: Host lookup by identity claim value.

    Returns:
        The resolved identity. Rejections are returned, not raised, with
        ``action`` REJECT and ``reason`` set.
    """
    identity_value = claims.get(config.identity_key)
    if identity_value is None or identity_value == "":
        return _reject(IdentityRejectReason.MISSING_IDENTITY_CLAIM, claims)
    subject_identity = str(identity_value)

    try:
        email = render_template(config.email_format, claims) if config.email_format else ""
        if config.display_name_format:
            display_name = render_template(config.display_name_format, claims)
        else:
            display_name = str(claims.get(config.nickname_key) or subject_identity)
    except TemplateError as e:
        logger.warning(f"Identity template failed: {e}")
        return _reject(IdentityRejectReason.TEMPLATE_ERROR, claims, subject_identity)

    username = str(claims.get(config.nickname_key) or subject_identity)

    local_ref = find_local_identity(subject_identity)

    if local_ref is not None:
        if not local_ref.linked and not config.link_existing_users:
            return _reject(IdentityRejectReason.USER_NOT_LINKED, claims, subject_identity, local_ref)
        if config.login_gate is not None and not config.login_gate(claims):
            return _reject(IdentityRejectReason.LOGIN_DENIED, claims, subject_identity, local_ref)
        action = IdentityAction.LOGIN if local_ref.linked else IdentityAction.LINK
    else:
        if not config.create_if_does_not_exist:
            return _reject(IdentityRejectReason.USER_NOT_FOUND, claims, subject_identity)
        if config.creation_gate is not None and not config.creation_gate(claims):
            return _reject(IdentityRejectReason.CREATION_DENIED, claims, subject_identity)
        action = IdentityAction.CREATE

    logger.debug(f"Identity resolved: action={action.value}")
    return ResolvedIdentity(
        action=action,
        subject_identity=subject_identity,
        subject=str(claims.get("sub", "")),
        display_name=display_name,
        username=username,
        email=email,
        raw_claims=dict(claims),
        local_ref=local_ref,
    )
