from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from betmenow.models.bet import (
    BetCreate,
    BetResponse,
    BetStatus,
    BetUpdate,
    OutcomeDeclare,
    OutcomeResolve,
    ReminderCreate,
)
from betmenow.services import bet_service
from betmenow.services.auth_service import get_current_user

router = APIRouter(prefix="/api/bets", tags=["bets"])


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=BetResponse)
async def create(body: BetCreate, request: Request, user=Depends(get_current_user)):
    """Issue a bet to one or more friends."""
    return await bet_service.create_bet(
        str(user["_id"]),
        description=body.description,
        stake=body.stake,
        due_date=body.due_date,
        visibility=body.visibility,
        recipient_ids=body.recipient_ids,
        request=request,
    )


@router.get("/", response_model=list[BetResponse])
async def list_my_bets(
    status_filter: Optional[BetStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_current_user),
):
    """Bets the current user created or received, newest first."""
    return await bet_service.list_bets(
        str(user["_id"]),
        status=status_filter.value if status_filter else None,
        limit=limit,
    )


@router.get("/{bet_id}", response_model=BetResponse)
async def get_one(bet_id: str, user=Depends(get_current_user)):
    return await bet_service.get_bet_view(str(user["_id"]), bet_id)


@router.patch("/{bet_id}", response_model=BetResponse)
async def edit(bet_id: str, body: BetUpdate, request: Request, user=Depends(get_current_user)):
    """Edit a bet nobody has answered yet. Creator only."""
    return await bet_service.update_bet(
        str(user["_id"]), bet_id, body.model_dump(exclude_unset=True), request=request,
    )


@router.delete("/{bet_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(bet_id: str, request: Request, user=Depends(get_current_user)):
    await bet_service.delete_bet(str(user["_id"]), bet_id, request=request)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{bet_id}/accept", response_model=BetResponse)
async def accept(bet_id: str, request: Request, user=Depends(get_current_user)):
    return await bet_service.accept_bet(str(user["_id"]), bet_id, request=request)


@router.post("/{bet_id}/reject", response_model=BetResponse)
async def reject(bet_id: str, request: Request, user=Depends(get_current_user)):
    return await bet_service.reject_bet(str(user["_id"]), bet_id, request=request)


@router.post("/{bet_id}/declare", response_model=BetResponse)
async def declare(
    bet_id: str, body: OutcomeDeclare, request: Request, user=Depends(get_current_user),
):
    """Declare your own outcome: `won` starts a claim, `lost` settles the duel."""
    return await bet_service.declare_outcome(
        str(user["_id"]), bet_id, body.outcome, request=request,
    )


@router.post("/{bet_id}/confirm", response_model=BetResponse)
async def confirm(
    bet_id: str,
    request: Request,
    body: Optional[OutcomeResolve] = None,
    user=Depends(get_current_user),
):
    """Confirm your opponent's claim."""
    return await bet_service.confirm_outcome(
        str(user["_id"]), bet_id, body.recipient_record_id if body else None, request=request,
    )


@router.post("/{bet_id}/dispute", response_model=BetResponse)
async def dispute(
    bet_id: str,
    request: Request,
    body: Optional[OutcomeResolve] = None,
    user=Depends(get_current_user),
):
    """Reject your opponent's claim. The bet keeps running."""
    return await bet_service.dispute_outcome(
        str(user["_id"]), bet_id, body.recipient_record_id if body else None, request=request,
    )


@router.post("/{bet_id}/cancel", response_model=BetResponse)
async def cancel(bet_id: str, request: Request, user=Depends(get_current_user)):
    return await bet_service.cancel_bet(str(user["_id"]), bet_id, request=request)


@router.post("/{bet_id}/remind")
async def remind(
    bet_id: str, body: ReminderCreate, request: Request, user=Depends(get_current_user),
):
    """Remind a recipient who has not answered yet."""
    return await bet_service.send_reminder(
        str(user["_id"]), bet_id, body.recipient_record_id, request=request,
    )
