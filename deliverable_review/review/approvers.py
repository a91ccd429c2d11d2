"""
Approver requirements and their resolution to concrete identities.

A level names its approvers with a tagged variant:

- ``user``: one known identity
- ``role``: every member of a role in the role directory
- ``external``: someone outside the organisation, identified by email

Roles are expanded before approver slots are created, so a slot always
holds a concrete identity.
"""

import json
from pathlib import Path
from typing import Annotated, Dict, Iterable, List, Literal, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, constr

from .enums import ApproverKind
from .errors import ApproverResolutionError
from .primitives import ApproverIdentity

logger = structlog.get_logger()


class UserApprover(BaseModel):
    """A specific internal user."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["user"] = "user"
    approver_id: constr(min_length=1, max_length=128)
    name: constr(min_length=1, max_length=256)
    email: Optional[constr(max_length=320)] = None


class RoleApprover(BaseModel):
    """Every member of a role."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["role"] = "role"
    role: constr(min_length=1, max_length=128)


class ExternalApprover(BaseModel):
    """A client or partner reviewer without an internal account."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["external"] = "external"
    name: constr(min_length=1, max_length=256)
    email: constr(min_length=3, max_length=320)
    approver_id: Optional[constr(min_length=1, max_length=128)] = None

    @property
    def identity_id(self) -> str:
        return self.approver_id or f"external:{self.email.lower()}"


ApproverSpec = Annotated[
    Union[UserApprover, RoleApprover, ExternalApprover],
    Field(discriminator="kind"),
]

approver_specs_adapter = TypeAdapter(List[ApproverSpec])

ResolvedApprover = Tuple[ApproverKind, ApproverIdentity]


class RoleDirectory:
    """Maps role names to the identities holding them."""

    def __init__(self, roles: Optional[Dict[str, Iterable[ApproverIdentity]]] = None):
        self._roles: Dict[str, List[ApproverIdentity]] = {}
        for role, members in (roles or {}).items():
            for member in members:
                self.add(role, member)

    def add(self, role: str, identity: ApproverIdentity) -> None:
        members = self._roles.setdefault(role, [])
        if all(m.approver_id != identity.approver_id for m in members):
            members.append(identity)

    def members(self, role: str) -> List[ApproverIdentity]:
        return list(self._roles.get(role, []))

    @property
    def roles(self) -> List[str]:
        return sorted(self._roles)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RoleDirectory":
        """Load ``{"role": [{"approver_id": ..., "name": ...}, ...]}`` from JSON."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = cls(
            {
                role: [ApproverIdentity.model_validate(m) for m in members]
                for role, members in raw.items()
            }
        )
        logger.info("role_directory_loaded", path=str(path), roles=directory.roles)
        return directory


def resolve_approvers(
    specs: Iterable[ApproverSpec],
    directory: RoleDirectory,
    level_name: Optional[str] = None,
) -> List[ResolvedApprover]:
    """Expand approver requirements into a de-duplicated, ordered identity list.

    Raises:
        ApproverResolutionError: if nothing resolves to an identity
    """
    specs = list(specs)
    resolved: List[ResolvedApprover] = []
    seen = set()

    def _add(kind: ApproverKind, identity: ApproverIdentity) -> None:
        if identity.approver_id in seen:
            return
        seen.add(identity.approver_id)
        resolved.append((kind, identity))

    for spec in specs:
        if isinstance(spec, UserApprover):
            _add(
                ApproverKind.USER,
                ApproverIdentity(
                    approver_id=spec.approver_id, name=spec.name, email=spec.email
                ),
            )
        elif isinstance(spec, RoleApprover):
            members = directory.members(spec.role)
            if not members:
                logger.warning("role_has_no_members", role=spec.role, level=level_name)
            for member in members:
                _add(ApproverKind.ROLE, member)
        elif isinstance(spec, ExternalApprover):
            _add(
                ApproverKind.EXTERNAL,
                ApproverIdentity(
                    approver_id=spec.identity_id, name=spec.name, email=spec.email
                ),
            )
        else:
            raise TypeError(f"Unsupported approver requirement: {spec!r}")

    if not resolved:
        raise ApproverResolutionError(
            f"Level '{level_name}' has no approvers after resolution",
            level=level_name,
            requirements=[s.model_dump() for s in specs],
        )
    return resolved
