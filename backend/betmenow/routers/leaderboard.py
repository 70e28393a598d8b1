from typing import Optional

from fastapi import APIRouter, Depends, Query

from betmenow.models.user import LeaderboardEntry
from betmenow.services.auth_service import get_current_user
from betmenow.services.stats_service import LeaderboardPeriod, LeaderboardSort, leaderboard

router = APIRouter(prefix="/api/leaderboard", tags=["leaderboard"])


@router.get("/", response_model=list[LeaderboardEntry])
async def get_leaderboard(
    sort: LeaderboardSort = Query(LeaderboardSort.score),
    period: LeaderboardPeriod = Query(LeaderboardPeriod.all_time),
    search: Optional[str] = Query(None, max_length=50),
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_current_user),
):
    """Ranked users. Usernames and display names only, never emails."""
    return await leaderboard(sort=sort, period=period, search=search, limit=limit)
