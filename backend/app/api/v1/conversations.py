from fastapi import APIRouter, Depends

from app.core.dependencies import get_runtime
from app.core.runtime import VoucherRuntime
from app.schemas.voucher import ConversationStatsOut

router = APIRouter()


@router.get("/conversations/stats", response_model=ConversationStatsOut)
async def conversation_stats(runtime: VoucherRuntime = Depends(get_runtime)):
    """Live conversations grouped by state; expired ones are not counted."""
    stats = runtime.store.stats()
    return ConversationStatsOut(total=stats["total"], by_state=stats["by_state"])
