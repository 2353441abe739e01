"""
Game Master Agent — pure deterministic Python.

Responsibilities:
- Night action resolution (killer, protector, investigator)
- Vote tallying (plurality; ties and empty ballots eliminate nobody)
- Elimination bookkeeping (append-only)
- Win condition checks

All game rules are implemented here. Phase changes and timers live in the
phase machine; nothing in this module schedules anything.
"""
import logging
from collections import Counter
from typing import Optional

from models.game import (
    Faction, Investigation, NightActionType, NightOutcome, Role, Session,
    VoteOutcome, WinResult,
)

logger = logging.getLogger(__name__)


class GameMaster:
    """
    Deterministic rules engine.
    All methods operate on an in-memory Session and must be called from the
    session's mailbox so they never interleave.
    """

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def role_holder(session: Session, role: Role) -> Optional[str]:
        """The active participant holding `role`, or None once they are out."""
        for participant in session.active_participants():
            if session.roles.get(participant) == role:
                return participant
        return None

    @staticmethod
    def _target_of(session: Session, actor: Optional[str], action: NightActionType) -> Optional[str]:
        if actor is None:
            return None
        submitted = session.pending_actions.get(actor)
        if submitted is None or submitted.action != action:
            return None  # abstained
        return submitted.target

    # ── Elimination ───────────────────────────────────────────────────────────

    def eliminate(self, session: Session, participant_id: str, cause: str) -> bool:
        """
        Append `participant_id` to the eliminated list.
        Returns False (and changes nothing) if they were already out.
        """
        if session.is_eliminated(participant_id):
            return False
        session.eliminated.append(participant_id)
        session.log_event("elimination", target=participant_id, data={"cause": cause})
        logger.info(f"[{session.id}] Eliminated {participant_id} ({cause})")
        return True

    # ── Night action resolution ───────────────────────────────────────────────

    def resolve_night(self, session: Session) -> NightOutcome:
        """
        Apply the night's concealed actions:
          1. Killer's target is eliminated, unless the protector chose the same
             target, in which case nobody dies.
          2. Investigator privately learns the true role of their target.

        Abstentions have no effect. Targeting someone already eliminated wastes
        the action. Every action is logged as a hidden event.
        """
        killer = self.role_holder(session, Role.KILLER)
        protector = self.role_holder(session, Role.PROTECTOR)
        investigator = self.role_holder(session, Role.INVESTIGATOR)

        kill_target = self._target_of(session, killer, NightActionType.KILL)
        protect_target = self._target_of(session, protector, NightActionType.PROTECT)
        investigate_target = self._target_of(session, investigator, NightActionType.INVESTIGATE)

        outcome = NightOutcome(kill_target=kill_target, protect_target=protect_target)

        # ── Step 1: kill vs. protection ───────────────────────────────────────
        if kill_target is not None:
            blocked = kill_target == protect_target
            wasted = session.is_eliminated(kill_target)
            session.log_event(
                "night_kill_attempt", actor=killer, target=kill_target,
                data={"blocked": blocked, "wasted": wasted}, visible=False,
            )
            if blocked:
                logger.info(f"[{session.id}] Kill on {kill_target} blocked by protector")
            elif wasted:
                logger.info(f"[{session.id}] Kill on already-eliminated {kill_target} wasted")
            else:
                self.eliminate(session, kill_target, cause="night")
                outcome.eliminated = kill_target

        if protect_target is not None:
            session.log_event("night_protect", actor=protector, target=protect_target, visible=False)

        # ── Step 2: investigation ─────────────────────────────────────────────
        # Evaluated against the pre-night eliminated set; a target killed this
        # same night is still revealed.
        if investigate_target is not None:
            was_out = investigate_target in session.eliminated and investigate_target != outcome.eliminated
            if was_out:
                logger.info(f"[{session.id}] Investigation of eliminated {investigate_target} wasted")
            else:
                finding = Investigation(
                    day=session.day,
                    target=investigate_target,
                    role=session.roles.get(investigate_target, Role.BYSTANDER),
                )
                session.investigations.setdefault(investigator, []).append(finding)
                outcome.investigator = investigator
                outcome.investigation = finding
            session.log_event(
                "night_investigation", actor=investigator, target=investigate_target,
                data={"wasted": was_out}, visible=False,
            )

        return outcome

    # ── Vote tallying ─────────────────────────────────────────────────────────

    def tally_votes(self, session: Session) -> VoteOutcome:
        """
        Count valid votes per target. A single leader is eliminated;
        a tie or an empty ballot box eliminates nobody.
        """
        counts = Counter(
            target
            for voter, target in session.votes.items()
            if not session.is_eliminated(voter) and not session.is_eliminated(target)
        )
        tally = dict(counts)
        if not tally:
            logger.info(f"[{session.id}] Vote result: no votes cast")
            return VoteOutcome()

        top = max(tally.values())
        leaders = sorted(target for target, count in tally.items() if count == top)
        if len(leaders) > 1:
            logger.info(f"[{session.id}] Vote tie between {leaders} — no elimination")
            return VoteOutcome(tally=tally, tied=leaders)

        logger.info(f"[{session.id}] Vote result: {leaders[0]} with {top} votes")
        return VoteOutcome(tally=tally, eliminated=leaders[0])

    # ── Win condition check ───────────────────────────────────────────────────

    def check_win(self, session: Session) -> Optional[WinResult]:
        """
        Bystander faction wins when no killer is left; killer faction wins once
        killers are at least as many as everyone else. Returns None while the
        game continues. Winners are the surviving members of the winning side.
        """
        active = session.active_participants()
        killers = [p for p in active if session.roles.get(p) == Role.KILLER]
        others = [p for p in active if session.roles.get(p) != Role.KILLER]

        if not killers:
            return WinResult(faction=Faction.BYSTANDER, winners=others)
        if len(killers) >= len(others):
            return WinResult(faction=Faction.KILLER, winners=killers)
        return None


# Module-level singleton
game_master = GameMaster()
