from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rag_agent.logger import GLOBAL_LOGGER as log

from .models import IngestionStep, utcnow


class IngestionLedger:
    """
    Step ledger for the ingestion pipeline. A row means the step finished and
    its output can be reused instead of running the step again.
    """

    async def completed_steps(self, db: AsyncSession, document_id: str) -> dict[str, dict[str, Any]]:
        out = await db.execute(
            select(IngestionStep).where(IngestionStep.document_id == document_id)
        )
        return {row.step: row.output for row in out.scalars().all()}

    async def record_step(
        self,
        db: AsyncSession,
        document_id: str,
        session_id: str,
        step: str,
        output: dict[str, Any],
        attempts: int,
    ) -> None:
        out = await db.execute(
            select(IngestionStep).where(
                IngestionStep.document_id == document_id, IngestionStep.step == step
            )
        )
        row = out.scalar_one_or_none()
        if row is None:
            db.add(
                IngestionStep(
                    document_id=document_id,
                    session_id=session_id,
                    step=step,
                    output=output,
                    attempts=attempts,
                    completed_at=utcnow(),
                )
            )
        else:
            row.output = output
            row.attempts = attempts
            row.completed_at = utcnow()
        await db.commit()
        log.debug("Step recorded | document_id=%s | step=%s", document_id, step)
