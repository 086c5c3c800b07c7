"""
Branch registry: resolve-or-create by (company, taxpayer id).

Contract:
    BranchService never commits; the caller owns the transaction.  Returns
    BranchInfo DTOs instead of ORM rows.

Guarantees:
    - resolve_or_create is idempotent and safe against a concurrent insert
      of the same (company, taxpayer id): the insert ignores conflicts and the
      row is re-selected.
    - A newly created branch receives the generic participants.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from efd_kernel.db.upsert import insert_ignoring_conflicts
from efd_kernel.domain.taxpayer import format_cnpj, normalize_cnpj
from efd_kernel.exceptions import PersistenceError
from efd_kernel.logging_config import get_logger
from efd_kernel.models.branch import GENERIC_PARTICIPANTS, BranchModel, ParticipantModel

logger = get_logger("services.branch")


@dataclass(frozen=True)
class BranchInfo:
    """Immutable view of a branch."""

    id: UUID
    company_id: UUID
    taxpayer_id: str
    name: str
    establishment_code: str | None
    created: bool = False


class BranchService:
    """Resolves branches for a company on behalf of an actor."""

    def __init__(self, session: Session, actor_id: UUID):
        self._session = session
        self._actor_id = actor_id

    def resolve_or_create(
        self,
        company_id: UUID,
        taxpayer_id: str,
        name: str | None = None,
        establishment_code: str | None = None,
    ) -> BranchInfo:
        """
        Return the branch for ``taxpayer_id`` within ``company_id``, creating
        it on first sight.

        Raises:
            InvalidTaxpayerIdError: ``taxpayer_id`` is not a valid CNPJ.
            PersistenceError: the branch could not be read or written.
        """
        cnpj = normalize_cnpj(taxpayer_id)
        try:
            return self._resolve_or_create(company_id, cnpj, name, establishment_code)
        except SQLAlchemyError as exc:
            raise PersistenceError(BranchModel.__tablename__, str(exc)) from exc

    def _resolve_or_create(
        self,
        company_id: UUID,
        cnpj: str,
        name: str | None,
        establishment_code: str | None,
    ) -> BranchInfo:
        existing = self._find(company_id, cnpj)
        if existing is not None:
            if establishment_code and existing.establishment_code != establishment_code:
                existing.establishment_code = establishment_code
                if name:
                    existing.name = name
                existing.updated_by_id = self._actor_id
                self._session.flush()
            return self._to_dto(existing, created=False)

        inserted = insert_ignoring_conflicts(
            self._session,
            BranchModel,
            [
                {
                    "id": uuid4(),
                    "company_id": company_id,
                    "taxpayer_id": cnpj,
                    "name": (name or f"Filial {format_cnpj(cnpj)}")[:255],
                    "establishment_code": establishment_code,
                    "created_by_id": self._actor_id,
                }
            ],
            conflict_columns=("company_id", "taxpayer_id"),
        )
        branch = self._find(company_id, cnpj)
        if branch is None:
            raise RuntimeError(f"Branch {cnpj} vanished after insert")

        created = bool(inserted)
        if created:
            self._add_generic_participants(branch.id)
            logger.info(
                "branch_created",
                extra={"branch_id": str(branch.id), "taxpayer_id": cnpj},
            )
        return self._to_dto(branch, created=created)

    def get(self, branch_id: UUID) -> BranchInfo | None:
        branch = self._session.get(BranchModel, branch_id)
        return self._to_dto(branch) if branch is not None else None

    def _find(self, company_id: UUID, cnpj: str) -> BranchModel | None:
        return self._session.execute(
            select(BranchModel).where(
                BranchModel.company_id == company_id,
                BranchModel.taxpayer_id == cnpj,
            )
        ).scalar_one_or_none()

    def _add_generic_participants(self, branch_id: UUID) -> None:
        insert_ignoring_conflicts(
            self._session,
            ParticipantModel,
            [
                {
                    "id": uuid4(),
                    "branch_id": branch_id,
                    "participant_code": code,
                    "name": name,
                    "created_by_id": self._actor_id,
                }
                for code, name in GENERIC_PARTICIPANTS
            ],
            conflict_columns=("branch_id", "participant_code"),
        )

    @staticmethod
    def _to_dto(branch: BranchModel, created: bool = False) -> BranchInfo:
        return BranchInfo(
            id=branch.id,
            company_id=branch.company_id,
            taxpayer_id=branch.taxpayer_id,
            name=branch.name,
            establishment_code=branch.establishment_code,
            created=created,
        )
