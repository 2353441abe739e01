"""
Role Assignment Agent — uniform role shuffling plus an auditable commitment.

Responsibilities:
- Shuffle active participants and hand out killer / protector / investigator
  to the first three slots, bystander to everyone else
- Bind the server to the assignment with a salted SHA-256 commitment
- Verify a disclosed (roles, salt) pair against a published commitment

Called once by the phase machine when a session leaves the lobby.
"""
import hashlib
import hmac
import json
import logging
import random
import secrets
from typing import Dict, Optional

from models.errors import InsufficientParticipantsError
from models.game import Role, Session, SPECIAL_ROLES, MIN_PARTICIPANTS_FOR_ROLES

logger = logging.getLogger(__name__)


def serialize_roles(roles: Dict[str, Role]) -> str:
    """Canonical JSON of the role map: sorted keys, no whitespace."""
    return json.dumps(
        {participant: Role(role).value for participant, role in roles.items()},
        sort_keys=True,
        separators=(",", ":"),
    )


def hash_commitment(roles: Dict[str, Role], salt: str) -> str:
    return hashlib.sha256((serialize_roles(roles) + salt).encode("utf-8")).hexdigest()


class RoleAssigner:
    """
    Assigns roles to all active participants of a session.

    The RNG is injectable so tests can pin the shuffle; production uses a
    SystemRandom instance.
    """

    SALT_BYTES = 32

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def assign_roles(self, session: Session) -> Dict[str, Role]:
        """
        Shuffle the active participants and assign roles in slot order.

        Raises InsufficientParticipantsError (and leaves the session untouched)
        when fewer than three participants are active.
        """
        players = session.active_participants()
        if len(players) < MIN_PARTICIPANTS_FOR_ROLES:
            raise InsufficientParticipantsError(
                f"Need at least {MIN_PARTICIPANTS_FOR_ROLES} active participants "
                f"to assign roles; got {len(players)}.",
                session_id=session.id,
            )

        self.rng.shuffle(players)
        roles: Dict[str, Role] = {}
        for i, player in enumerate(players):
            roles[player] = SPECIAL_ROLES[i] if i < len(SPECIAL_ROLES) else Role.BYSTANDER

        session.roles = roles
        logger.info(
            f"[{session.id}] Roles assigned to {len(roles)} participants "
            f"({len(roles) - len(SPECIAL_ROLES)} bystanders)"
        )
        return roles

    def generate_commitment(self, session: Session) -> str:
        """
        Hash the serialized role map with a fresh random salt.
        The hash is public; the salt stays on the session until the game ends.
        """
        salt = secrets.token_hex(self.SALT_BYTES)
        commitment = hash_commitment(session.roles, salt)
        session.salt = salt
        session.commitment = commitment
        logger.info(f"[{session.id}] Role commitment published: {commitment}")
        return commitment

    @staticmethod
    def verify_commitment(roles: Dict[str, Role], salt: str, commitment: str) -> bool:
        """True when hash(roles + salt) reproduces the published commitment."""
        return hmac.compare_digest(hash_commitment(roles, salt), commitment)


# Module-level singleton
role_assigner = RoleAssigner()
