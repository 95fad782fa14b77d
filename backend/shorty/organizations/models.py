import enum

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from shorty.common.base_models import IntegerIDBase, TimestampMixin


class OrgRole(str, enum.Enum):
    admin = "admin"
    member = "member"


class Organization(IntegerIDBase, TimestampMixin):
    """A tenant. SSO settings, SCIM provisioning, groups and link slugs are all
    scoped to one organization."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    is_global: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class OrganizationMembership(IntegerIDBase, TimestampMixin):
    __tablename__ = "organization_memberships"
    __table_args__ = (UniqueConstraint("organization_id", "user_id", name="uq_org_user"),)

    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[OrgRole] = mapped_column(Enum(OrgRole), default=OrgRole.member, nullable=False)
