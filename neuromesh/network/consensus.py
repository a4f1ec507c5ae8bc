"""Lightweight consensus for cross-station mutations.

The proposing station opens a request, every affected station votes,
majority wins. A station that has not voted when the window closes is
counted as a "timeout" vote, and timeouts count as approval: silence is
non-objection, so graph growth continues while stations are offline.

Known trust assumption: a station that is permanently unreachable but
still affected will approve every proposal touching it by default.

State lives in two dicts keyed by proposal ID. All methods are
synchronous and never yield to the event loop between reading and
writing a key, which makes each call atomic for its proposal ID on the
station's loop.

Usage:
    coordinator = ConsensusCoordinator()
    request = coordinator.propose(proposal, "iot-hub", ["iot-hub", "scraper"])
    coordinator.cast_vote(request.proposal_id, "scraper", Vote.APPROVE)
    resolution = coordinator.resolve(request.proposal_id)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from neuromesh.graph.models import EvolutionProposal
from neuromesh.types import CONSENSUS_TIMEOUT_SECONDS, Vote, new_id

_logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsensusRequest(BaseModel):
    """A cross-station vote on one proposal."""

    proposal_id: str
    proposal: EvolutionProposal
    proposer_station_id: str
    affected_station_ids: list[str]
    created_at: datetime
    expires_at: datetime


class ConsensusResult(BaseModel):
    proposal_id: str
    approved: bool
    votes: dict[str, Vote] = Field(default_factory=dict)
    reason: str = ""


class ConsensusStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


class ConsensusResolution(BaseModel):
    """Outcome of a resolve() call. `result` is set once decided."""

    proposal_id: str
    status: ConsensusStatus
    result: ConsensusResult | None = None

    @property
    def decided(self) -> bool:
        return self.status in (ConsensusStatus.APPROVED, ConsensusStatus.REJECTED)


class ConsensusCoordinator:
    """Tracks in-flight consensus requests: proposed -> voting -> resolved."""

    def __init__(
        self,
        timeout: timedelta = timedelta(seconds=CONSENSUS_TIMEOUT_SECONDS),
        clock: Clock = _utcnow,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._pending: dict[str, ConsensusRequest] = {}
        self._votes: dict[str, dict[str, Vote]] = {}

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def propose(
        self,
        proposal: EvolutionProposal,
        proposer_station_id: str,
        affected_station_ids: list[str],
    ) -> ConsensusRequest:
        now = self._clock()
        proposal_id = f"consensus-{int(now.timestamp() * 1000)}-{new_id()[:6]}"
        request = ConsensusRequest(
            proposal_id=proposal_id,
            proposal=proposal,
            proposer_station_id=proposer_station_id,
            affected_station_ids=list(dict.fromkeys(affected_station_ids)),
            created_at=now,
            expires_at=now + self._timeout,
        )
        self._pending[proposal_id] = request
        self._votes[proposal_id] = {}

        _logger.info(
            "Consensus requested for %s %s (id=%s, stations=%s)",
            proposal.type.value, proposal.target_id, proposal_id,
            ",".join(request.affected_station_ids),
        )
        return request

    def track(self, request: ConsensusRequest) -> bool:
        """Adopt a request opened by a peer station so local votes can be tallied.

        Returns False if the request is already known.
        """
        if request.proposal_id in self._pending:
            return False
        self._pending[request.proposal_id] = request
        self._votes[request.proposal_id] = {}
        return True

    def cast_vote(self, proposal_id: str, station_id: str, vote: Vote | str) -> bool:
        """Record a vote. A later vote from the same station replaces the earlier one.

        Returns False for an unknown proposal, a station outside the
        affected set, or anything other than approve/reject.
        """
        proposal_votes = self._votes.get(proposal_id)
        request = self._pending.get(proposal_id)
        if proposal_votes is None or request is None:
            return False
        try:
            vote = Vote(vote)
        except ValueError:
            return False
        if vote == Vote.TIMEOUT:
            return False
        if station_id not in request.affected_station_ids:
            _logger.debug("Ignoring vote from unaffected station %s on %s", station_id, proposal_id)
            return False

        proposal_votes[station_id] = vote
        return True

    def resolve(self, proposal_id: str) -> ConsensusResolution:
        """Decide a request if every affected station voted or the window closed.

        Resolution is one-shot: the request is dropped once decided and
        later calls report NOT_FOUND.
        """
        request = self._pending.get(proposal_id)
        proposal_votes = self._votes.get(proposal_id)
        if request is None or proposal_votes is None:
            return ConsensusResolution(proposal_id=proposal_id, status=ConsensusStatus.NOT_FOUND)

        expired = self._clock() >= request.expires_at

        all_votes: dict[str, Vote] = {}
        for station_id in request.affected_station_ids:
            vote = proposal_votes.get(station_id)
            if vote is not None:
                all_votes[station_id] = vote
            elif expired:
                all_votes[station_id] = Vote.TIMEOUT

        total_voters = len(request.affected_station_ids)
        if len(all_votes) < total_voters and not expired:
            return ConsensusResolution(proposal_id=proposal_id, status=ConsensusStatus.PENDING)

        approve_count = sum(1 for v in all_votes.values() if v in (Vote.APPROVE, Vote.TIMEOUT))
        reject_count = sum(1 for v in all_votes.values() if v == Vote.REJECT)
        approved = approve_count > reject_count

        del self._pending[proposal_id]
        del self._votes[proposal_id]

        result = ConsensusResult(
            proposal_id=proposal_id,
            approved=approved,
            votes=all_votes,
            reason=(
                f"Approved: {approve_count}/{total_voters} votes"
                if approved
                else f"Rejected: {reject_count}/{total_voters} votes"
            ),
        )
        _logger.info("Consensus %s resolved: %s", proposal_id, result.reason)
        return ConsensusResolution(
            proposal_id=proposal_id,
            status=ConsensusStatus.APPROVED if approved else ConsensusStatus.REJECTED,
            result=result,
        )

    def resolve_all(self) -> list[ConsensusResolution]:
        """Resolve every request that can be decided now. Pending ones are skipped."""
        decided = []
        for proposal_id in list(self._pending):
            resolution = self.resolve(proposal_id)
            if resolution.decided:
                decided.append(resolution)
        return decided

    def get(self, proposal_id: str) -> ConsensusRequest | None:
        return self._pending.get(proposal_id)

    def pending(self) -> list[ConsensusRequest]:
        return list(self._pending.values())

    def votes_for(self, proposal_id: str) -> dict[str, Vote]:
        return dict(self._votes.get(proposal_id, {}))

    def __len__(self) -> int:
        return len(self._pending)
