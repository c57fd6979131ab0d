"""
Candidate selection for spare requests.

Eligibility rules live here, behind the CandidateSelector protocol; the
notification core only consumes the resulting member IDs.
"""

from typing import List, Protocol
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from backend.database.models import (
    Member,
    MemberAvailability,
    SparePosition,
    SpareRequest,
    SpareRequestInvitation,
    SpareRequestType,
)


class CandidateSelector(Protocol):
    async def select_candidates(self, session: AsyncSession, spare_request: SpareRequest) -> List[int]:
        ...


class LeagueAvailabilitySelector:
    """
    Default eligibility rules.

    Public requests go to members marked available in the request's league
    (and able to skip, for skip requests). Private requests go to the
    invitees. Members must be subscribed to email; the requester is never a
    candidate. IDs come back sorted so a seeded shuffle is reproducible.
    """

    async def select_candidates(self, session: AsyncSession, spare_request: SpareRequest) -> List[int]:
        if spare_request.request_type == SpareRequestType.PRIVATE:
            query = (
                select(Member.id)
                .join(SpareRequestInvitation, SpareRequestInvitation.member_id == Member.id)
                .where(SpareRequestInvitation.spare_request_id == spare_request.id)
            )
        else:
            query = (
                select(Member.id)
                .join(MemberAvailability, MemberAvailability.member_id == Member.id)
                .where(
                    MemberAvailability.league_id == spare_request.league_id,
                    MemberAvailability.available == True,  # noqa: E712
                )
            )
            if spare_request.position == SparePosition.SKIP:
                query = query.where(MemberAvailability.can_skip == True)  # noqa: E712

        query = query.where(
            Member.email_subscribed == True,  # noqa: E712
            Member.id != spare_request.requester_id,
        )
        result = await session.execute(query.order_by(Member.id))
        return list(dict.fromkeys(result.scalars().all()))


# Global selector instance
_selector = LeagueAvailabilitySelector()


def get_candidate_selector() -> CandidateSelector:
    """Get the global candidate selector."""
    return _selector
