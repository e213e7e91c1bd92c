"""
Vote service: the ledger/tally protocol shared by posts and comments.

Design notes
------------
- Each target kind is described by a ``VoteTarget`` (target model, ledger
  model, ledger foreign key).  ``vote`` and ``reconcile`` take the kind as a
  parameter, so there is exactly one implementation of the protocol.
- A vote reads the caller's current ledger row, derives the ledger mutation
  and the counter delta from ``plan_transition``, and applies both inside
  one ``atomic`` unit together with the read-back of the new tally.
- The tally is moved with ``vote_count = vote_count + :delta`` in SQL, so
  concurrent votes from different users compose without lost updates.
- Two racing first votes from the same user are stopped by the unique
  constraint on (target, user).  Updates and deletes of an existing row are
  conditional on the type that was read, so a row changed by a concurrent
  request matches nothing.  In both cases the loser's unit is rolled back
  and the vote is re-read and re-applied up to ``VOTE_CONFLICT_RETRIES``
  times.
- Ledger rows deleted outside ``vote`` (cascades, bulk edits) are repaired
  with ``recompute_tallies`` / ``reconcile`` / ``reconcile_all``.
- Nothing here reads from the Redis cache; post listings are invalidated
  after each committed vote.
"""
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.cache import cache
from forum_api.config import settings
from forum_api.database import atomic
from forum_api.exceptions import BadRequest, Conflict, NotFound, Unauthorized
from forum_api.models import Comment, CommentVote, Post, PostVote, User, VoteType

logger = logging.getLogger(__name__)


class VoteChoice(str, enum.Enum):
    UP = "upvote"
    DOWN = "downvote"
    REMOVE = "remove"

    @classmethod
    def parse(cls, raw: Any) -> "VoteChoice":
        """Return the choice named by *raw* or raise ``BadRequest``."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(raw)
        except ValueError:
            raise BadRequest(
                "Vote type must be one of 'upvote', 'downvote' or 'remove'"
            ) from None


class TargetKind(str, enum.Enum):
    POST = "post"
    COMMENT = "comment"


class LedgerMutation(enum.Enum):
    NONE = "none"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Transition:
    mutation: LedgerMutation
    delta: int
    new_type: VoteType | None


@dataclass(frozen=True)
class VoteTarget:
    kind: TargetKind
    label: str
    model: Any
    ledger: Any
    ledger_fk: Any


TARGETS: dict[TargetKind, VoteTarget] = {
    TargetKind.POST: VoteTarget(TargetKind.POST, "Post", Post, PostVote, PostVote.post_id),
    TargetKind.COMMENT: VoteTarget(
        TargetKind.COMMENT, "Comment", Comment, CommentVote, CommentVote.comment_id
    ),
}

_WEIGHTS: dict[VoteType | None, int] = {VoteType.UPVOTE: 1, VoteType.DOWNVOTE: -1, None: 0}

_REQUESTED_TYPE: dict[VoteChoice, VoteType | None] = {
    VoteChoice.UP: VoteType.UPVOTE,
    VoteChoice.DOWN: VoteType.DOWNVOTE,
    VoteChoice.REMOVE: None,
}


# ---------------------------------------------------------------------------
# Pure transition logic
# ---------------------------------------------------------------------------

def plan_transition(existing: VoteType | None, requested: VoteChoice) -> Transition:
    """
    Return the ledger mutation and tally delta that move a voter from
    *existing* (``None`` when they have no ledger row) to *requested*.

    The delta is always the new weight minus the old weight, where UP is
    +1, DOWN is -1 and "no vote" is 0.
    """
    new_type = _REQUESTED_TYPE[requested]
    delta = _WEIGHTS[new_type] - _WEIGHTS[existing]

    if existing == new_type:
        mutation = LedgerMutation.NONE
    elif existing is None:
        mutation = LedgerMutation.INSERT
    elif new_type is None:
        mutation = LedgerMutation.DELETE
    else:
        mutation = LedgerMutation.UPDATE
    return Transition(mutation=mutation, delta=delta, new_type=new_type)


def _weight(target: VoteTarget):
    return case((target.ledger.type == VoteType.UPVOTE, 1), else_=-1)


def _ledger_sum(target: VoteTarget):
    """Correlated scalar subquery: the ledger total for each target row."""
    return (
        select(func.coalesce(func.sum(_weight(target)), 0))
        .where(target.ledger_fk == target.model.id)
        .scalar_subquery()
    )


# ---------------------------------------------------------------------------
# Store steps (module-level so tests can interpose on them)
# ---------------------------------------------------------------------------

class StaleVote(Exception):
    """The ledger row a transition was planned from changed before it was written."""


async def _ensure_target(db: AsyncSession, target: VoteTarget, target_id: int) -> None:
    found = (
        await db.execute(select(target.model.id).where(target.model.id == target_id))
    ).scalar_one_or_none()
    if found is None:
        raise NotFound(f"{target.label} not found")


async def _find_vote(db: AsyncSession, target: VoteTarget, user_id: int, target_id: int):
    q = select(target.ledger).where(
        target.ledger_fk == target_id, target.ledger.user_id == user_id
    ).execution_options(populate_existing=True)
    return (await db.execute(q)).scalar_one_or_none()


async def _shift_tally(db: AsyncSession, target: VoteTarget, target_id: int, delta: int) -> None:
    await db.execute(
        update(target.model)
        .where(target.model.id == target_id)
        .values(vote_count=target.model.vote_count + delta)
        .execution_options(synchronize_session=False)
    )


async def _read_tally(db: AsyncSession, target: VoteTarget, target_id: int) -> int:
    q = select(target.model.vote_count).where(target.model.id == target_id)
    return (await db.execute(q)).scalar_one()


async def _explain_integrity_error(
    db: AsyncSession,
    target: VoteTarget,
    user_id: int,
    target_id: int,
    exc: IntegrityError,
) -> None:
    """
    Turn a rejected write whose voter or target has disappeared into the
    matching error.  Returns when both still exist, which leaves the
    uniqueness race as the only explanation.
    """
    user = (await db.execute(select(User.id).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise Unauthorized("User not found") from exc
    try:
        await _ensure_target(db, target, target_id)
    except NotFound as missing:
        raise missing from exc


async def _apply_vote(
    db: AsyncSession,
    target: VoteTarget,
    user_id: int,
    target_id: int,
    choice: VoteChoice,
) -> int:
    await _ensure_target(db, target, target_id)
    existing = await _find_vote(db, target, user_id, target_id)
    transition = plan_transition(existing.type if existing else None, choice)

    if transition.mutation is LedgerMutation.INSERT:
        row = target.ledger(user_id=user_id, type=transition.new_type)
        setattr(row, target.ledger_fk.key, target_id)
        db.add(row)
        await db.flush()
    elif transition.mutation is not LedgerMutation.NONE:
        # Only the row exactly as it was read may change.
        matches = (target.ledger.id == existing.id, target.ledger.type == existing.type)
        if transition.mutation is LedgerMutation.UPDATE:
            stmt = update(target.ledger).where(*matches).values(type=transition.new_type)
        else:
            stmt = delete(target.ledger).where(*matches)
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise StaleVote(
                f"{target.label.lower()} vote {existing.id} changed after it was read"
            )

    if transition.delta:
        await _shift_tally(db, target, target_id, transition.delta)
    return await _read_tally(db, target, target_id)


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def vote(
    db: AsyncSession,
    actor_id: int,
    target_id: int,
    kind: TargetKind,
    choice: VoteChoice | str,
) -> int:
    """
    Record *actor_id*'s *choice* on the target and return its new tally.

    Raises ``BadRequest`` for an unknown choice (before touching the
    store), ``NotFound`` when the target does not exist, ``Unauthorized``
    when the voter's account is gone, ``Conflict`` when a race with the
    same voter's other requests is lost on every attempt and
    ``StoreFailure`` when the unit cannot be committed.  In every error
    case nothing is applied.
    """
    choice = VoteChoice.parse(choice)
    target = TARGETS[kind]
    attempts = settings.VOTE_CONFLICT_RETRIES + 1

    for attempt in range(1, attempts + 1):
        try:
            async with atomic(db):
                count = await _apply_vote(db, target, actor_id, target_id, choice)
        except (IntegrityError, StaleVote) as exc:
            if isinstance(exc, IntegrityError):
                await _explain_integrity_error(db, target, actor_id, target_id, exc)
            if attempt == attempts:
                raise Conflict(
                    "Your vote collided with another request; please retry"
                ) from exc
            logger.info(
                "Ledger conflict on %s %s for user %s; re-reading (attempt %d/%d)",
                kind.value, target_id, actor_id, attempt, attempts,
            )
            continue
        break

    await cache.invalidate_posts()
    return count


async def recompute_tallies(
    db: AsyncSession, kind: TargetKind, target_ids: Iterable[int] | None = None
) -> int:
    """
    Overwrite ``vote_count`` with the ledger total for the given targets
    (all targets of *kind* when *target_ids* is None) and return how many
    of them had drifted.

    Runs inside the caller's transaction; it neither flushes nor commits.
    """
    target = TARGETS[kind]
    ids = None if target_ids is None else list(target_ids)
    if ids is not None and not ids:
        return 0

    drift_q = select(func.count()).select_from(target.model).where(
        target.model.vote_count != _ledger_sum(target)
    )
    stmt = update(target.model).values(vote_count=_ledger_sum(target))
    if ids is not None:
        drift_q = drift_q.where(target.model.id.in_(ids))
        stmt = stmt.where(target.model.id.in_(ids))

    drifted = (await db.execute(drift_q)).scalar_one()
    await db.execute(stmt.execution_options(synchronize_session=False))
    return drifted


async def reconcile(db: AsyncSession, target_id: int, kind: TargetKind) -> int:
    """Recompute one target's tally from its ledger and return it."""
    target = TARGETS[kind]
    async with atomic(db):
        await _ensure_target(db, target, target_id)
        drifted = await recompute_tallies(db, kind, [target_id])
        count = await _read_tally(db, target, target_id)
    if drifted:
        logger.warning("Reconciled drifted tally on %s %s -> %d", kind.value, target_id, count)
        await cache.invalidate_posts()
    return count


async def reconcile_all(db: AsyncSession) -> dict[str, int]:
    """
    Recompute every post and comment tally in one unit.

    Returns the number of drifted targets per kind.
    """
    async with atomic(db):
        report = {
            "posts": await recompute_tallies(db, TargetKind.POST),
            "comments": await recompute_tallies(db, TargetKind.COMMENT),
        }
    if report["posts"] or report["comments"]:
        logger.warning("Reconciliation corrected drifted tallies: %s", report)
        await cache.invalidate_posts()
    return report


async def delete_votes_on(db: AsyncSession, kind: TargetKind, target_ids: Iterable[int]) -> None:
    """Delete every ledger row on the given targets (caller's transaction)."""
    ids = list(target_ids)
    if not ids:
        return
    target = TARGETS[kind]
    await db.execute(delete(target.ledger).where(target.ledger_fk.in_(ids)))


async def delete_votes_by(db: AsyncSession, kind: TargetKind, user_id: int) -> list[int]:
    """
    Delete every ledger row of *kind* cast by *user_id* and return the ids
    of the targets they were on (caller's transaction).
    """
    target = TARGETS[kind]
    voted = (
        await db.execute(select(target.ledger_fk).where(target.ledger.user_id == user_id))
    ).scalars().all()
    await db.execute(delete(target.ledger).where(target.ledger.user_id == user_id))
    return list(voted)


async def get_voters(
    db: AsyncSession, kind: TargetKind, target_ids: Iterable[int]
) -> dict[int, dict[str, list[int]]]:
    """
    Return ``{target_id: {"upvoted_by": [...], "downvoted_by": [...]}}``
    read straight from the ledger.
    """
    ids = list(target_ids)
    voters: dict[int, dict[str, list[int]]] = {
        i: {"upvoted_by": [], "downvoted_by": []} for i in ids
    }
    if not ids:
        return voters
    target = TARGETS[kind]
    rows = await db.execute(
        select(target.ledger_fk, target.ledger.user_id, target.ledger.type)
        .where(target.ledger_fk.in_(ids))
        .order_by(target.ledger.id)
    )
    for target_id, user_id, vote_type in rows.all():
        key = "upvoted_by" if vote_type == VoteType.UPVOTE else "downvoted_by"
        voters[target_id][key].append(user_id)
    return voters
