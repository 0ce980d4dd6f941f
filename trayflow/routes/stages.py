"""Stage catalog routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trayflow.auth.dependencies import READ_ROLES, require_role
from trayflow.database import get_db
from trayflow.models.stages import CropStage
from trayflow.schemas.crops import StageRead

router = APIRouter(prefix="/stages", tags=["stages"])


@router.get("", response_model=list[StageRead])
async def list_stages(
	include_inactive: bool = False,
	db: AsyncSession = Depends(get_db),
	_principal: object = Depends(require_role(*READ_ROLES)),
) -> list[StageRead]:
	stmt = select(CropStage).order_by(CropStage.sort_order)
	if not include_inactive:
		stmt = stmt.where(CropStage.is_active.is_(True))
	try:
		rows = await db.execute(stmt)
	except Exception as exc:
		raise HTTPException(
			status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
			detail="Unexpected stage catalog failure",
		) from exc
	return [StageRead.model_validate(row) for row in rows.scalars().all()]
