"""Waitlist router: join and leave queues, answer offers, expire stale offers."""

import logging
from typing import List, Tuple

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.dependencies import Actor, CurrentActor, CurrentClock, DatabaseSession, parse_uuid
from ..core.exceptions import NotFoundError
from ..models.waitlist import OfferStatus
from ..models.waitlist import WaitlistEntry as WaitlistEntryRow
from ..models.waitlist import WaitlistOffer as WaitlistOfferRow
from ..schemas.waitlist import (
    AcceptOfferResponse,
    DeclineOfferResponse,
    JoinWaitlistRequest,
    JoinWaitlistResult,
    LeaveWaitlistResponse,
    OfferRequest,
    ProcessExpiredResponse,
    WaitlistEntry,
    WaitlistEntryRequest,
    WaitlistOffer,
)
from ..services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/waitlist", tags=["waitlist"])


async def _pass_on_all(service: WaitlistService, held: List[Tuple[WaitlistOfferRow, WaitlistEntryRow]]) -> None:
    for offer, entry in held:
        await service.pass_on(offer, entry)


@router.post("/join", response_model=JoinWaitlistResult)
async def join_waitlist(
    request: JoinWaitlistRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> JoinWaitlistResult:
    """
    Join the waitlist for a resource window.

    Joining again with an overlapping window returns the existing entry.
    """
    return await WaitlistService(db, clock).join_waitlist(
        request.guild_id,
        parse_uuid(request.resource_id, "resource_id"),
        actor.user_id,
        request.desired_start,
        request.desired_end,
    )


@router.post("/leave", response_model=LeaveWaitlistResponse)
async def leave_waitlist(
    request: WaitlistEntryRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> LeaveWaitlistResponse:
    """Leave the queue; a pending offer the entry held goes to the next in line."""
    service = WaitlistService(db, clock)
    entry_id = parse_uuid(request.entry_id, "entry_id")

    held = await service.get_pending_offers_for_entry(entry_id)
    canceled = await service.leave_waitlist(entry_id, actor.user_id)
    if canceled:
        await _pass_on_all(service, held)
    return LeaveWaitlistResponse(canceled=canceled)


@router.post("/admin-cancel", response_model=LeaveWaitlistResponse)
async def admin_cancel_entry(
    request: WaitlistEntryRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> LeaveWaitlistResponse:
    actor.require_admin("cancel waitlist entries of other users")
    service = WaitlistService(db, clock)
    entry_id = parse_uuid(request.entry_id, "entry_id")

    held = await service.get_pending_offers_for_entry(entry_id)
    canceled = await service.admin_cancel(entry_id)
    if canceled:
        await _pass_on_all(service, held)
    return LeaveWaitlistResponse(canceled=canceled)


@router.post("/offers/accept", response_model=AcceptOfferResponse)
async def accept_offer(
    request: OfferRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> AcceptOfferResponse:
    """Book the offered window; an offer that lapsed or lost its window goes to the next in line."""
    service = WaitlistService(db, clock)
    offer_id = parse_uuid(request.offer_id, "offer_id")

    found = await service.get_offer_with_entry(offer_id)
    was_pending = found is not None and found[0].status == OfferStatus.PENDING

    reservation_id = await service.accept_offer(offer_id, actor.user_id)
    if was_pending and found[0].status == OfferStatus.EXPIRED:
        await service.pass_on(*found)

    return AcceptOfferResponse(
        accepted=reservation_id is not None,
        reservation_id=str(reservation_id) if reservation_id else None,
    )


@router.post("/offers/decline", response_model=DeclineOfferResponse)
async def decline_offer(
    request: OfferRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> DeclineOfferResponse:
    """Decline an offer; the same window then goes to the next entry in line."""
    service = WaitlistService(db, clock)
    offer_id = parse_uuid(request.offer_id, "offer_id")

    found = await service.get_offer_with_entry(offer_id)
    if found is None:
        raise NotFoundError(resource_type="waitlist offer", resource_id=str(offer_id))
    offer, entry = found
    was_pending = offer.status == OfferStatus.PENDING

    declined = await service.decline_offer(offer_id, actor.user_id)
    next_offer = None
    # A late decline expires the offer; its window moves on all the same
    if was_pending and offer.status in (OfferStatus.DECLINED, OfferStatus.EXPIRED):
        next_offer = await service.pass_on(offer, entry)

    return DeclineOfferResponse(
        declined=declined,
        next_offer=WaitlistOffer.model_validate(next_offer) if next_offer else None,
    )


@router.post("/offers/process-expired", response_model=ProcessExpiredResponse)
async def process_expired_offers(
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ProcessExpiredResponse:
    """Expire overdue offers and pass each window on to the next entry in line."""
    service = WaitlistService(db, clock)
    expired_ids = await service.process_expired()

    new_offers = []
    for offer, entry in await service.get_offers_with_entries(expired_ids):
        next_offer = await service.pass_on(offer, entry)
        if next_offer is not None:
            new_offers.append(WaitlistOffer.model_validate(next_offer))

    return ProcessExpiredResponse(
        expired_offer_ids=[str(offer_id) for offer_id in expired_ids],
        new_offers=new_offers,
    )


@router.get("/resource/{resource_id}", response_model=List[WaitlistEntry])
async def get_resource_waitlist(
    resource_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[WaitlistEntry]:
    """Active entries for a resource, in the order they will be offered."""
    entries = await WaitlistService(db, clock).get_waitlist_for_resource(parse_uuid(resource_id, "resource_id"))
    return [WaitlistEntry.model_validate(e) for e in entries]


@router.get("/mine", response_model=List[WaitlistEntry])
async def get_my_waitlist(
    guild_id: int = Query(..., description="Guild to list entries for"),
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[WaitlistEntry]:
    entries = await WaitlistService(db, clock).get_waitlist_for_user(guild_id, actor.user_id)
    return [WaitlistEntry.model_validate(e) for e in entries]


@router.get("/offers", response_model=List[WaitlistOffer])
async def get_my_offers(
    guild_id: int = Query(..., description="Guild to list offers for"),
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[WaitlistOffer]:
    offers = await WaitlistService(db, clock).get_pending_offers(guild_id, actor.user_id)
    return [WaitlistOffer.model_validate(o) for o in offers]
