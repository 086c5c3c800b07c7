"""
Module: efd_kernel.models.branch
Responsibility: ORM persistence for branches (taxpayer-identified
    establishments of a company) and the business partners registered under
    them by 0150 records.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one branch per (company_id, taxpayer_id) (uq_branch_company_taxpayer).
    - At most one participant per (branch_id, participant_code)
      (uq_participant_branch_code); re-importing a ledger never duplicates
      partners.

Failure modes:
    - IntegrityError on a racing duplicate insert that bypasses
      insert_ignoring_conflicts.
"""

from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from efd_kernel.db.base import TrackedBase, UUIDString

# Placeholder partners used when a goods document carries no participant code.
GENERIC_PARTICIPANTS: tuple[tuple[str, str], ...] = (
    ("9999999999", "CONSUMIDOR FINAL"),
    ("8888888888", "FORNECEDOR NÃO IDENTIFICADO"),
)


class BranchModel(TrackedBase):
    """A company establishment keyed by its 14-digit CNPJ."""

    __tablename__ = "branches"

    __table_args__ = (
        UniqueConstraint("company_id", "taxpayer_id", name="uq_branch_company_taxpayer"),
        Index("idx_branch_company", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    taxpayer_id: Mapped[str] = mapped_column(String(14), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    establishment_code: Mapped[str | None] = mapped_column(String(60), nullable=True)

    def __repr__(self) -> str:
        return f"<Branch {self.taxpayer_id}: {self.name}>"


class ParticipantModel(TrackedBase):
    """Business partner (0150) registered under a branch."""

    __tablename__ = "participants"

    __table_args__ = (
        UniqueConstraint("branch_id", "participant_code", name="uq_participant_branch_code"),
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False,
    )
    participant_code: Mapped[str] = mapped_column(String(60), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    cnpj: Mapped[str | None] = mapped_column(String(14), nullable=True)
    cpf: Mapped[str | None] = mapped_column(String(11), nullable=True)
    state_registration: Mapped[str | None] = mapped_column(String(20), nullable=True)
    municipality_code: Mapped[str | None] = mapped_column(String(7), nullable=True)
