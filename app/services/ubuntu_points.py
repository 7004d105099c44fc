"""
Ubuntu points configuration and level utilities.

Levels are derived from the score every time they are needed and never
stored, so a score change can never leave a stale level behind.
"""

from dataclasses import dataclass
from enum import Enum

UBUNTU_POINTS: dict[str, int] = {
    # Content
    "content_submitted": 10,
    "content_published": 100,
    "content_featured": 200,
    # Directory
    "listing_created": 25,
    "listing_approved": 50,
    "listing_verified": 75,
    "listing_featured": 100,
    # Community
    "community_help": 25,
    "review_completed": 50,
    "collaboration": 150,
    "knowledge_sharing": 75,
    "referral": 100,
    # Engagement
    "first_login": 10,
    "profile_completed": 25,
    "first_contribution": 50,
}


class UbuntuLevel(str, Enum):
    NEWCOMER = "newcomer"
    CONTRIBUTOR = "contributor"
    COMMUNITY_LEADER = "community_leader"
    UBUNTU_CHAMPION = "ubuntu_champion"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [
    UbuntuLevel.NEWCOMER,
    UbuntuLevel.CONTRIBUTOR,
    UbuntuLevel.COMMUNITY_LEADER,
    UbuntuLevel.UBUNTU_CHAMPION,
]


@dataclass(frozen=True, slots=True)
class LevelInfo:
    level: UbuntuLevel
    name: str
    min_score: int
    max_score: int | None  # None for the open-ended top level


UBUNTU_LEVELS: dict[UbuntuLevel, LevelInfo] = {
    UbuntuLevel.NEWCOMER: LevelInfo(UbuntuLevel.NEWCOMER, "Newcomer", 0, 499),
    UbuntuLevel.CONTRIBUTOR: LevelInfo(UbuntuLevel.CONTRIBUTOR, "Contributor", 500, 1999),
    UbuntuLevel.COMMUNITY_LEADER: LevelInfo(
        UbuntuLevel.COMMUNITY_LEADER, "Community Leader", 2000, 4999
    ),
    UbuntuLevel.UBUNTU_CHAMPION: LevelInfo(
        UbuntuLevel.UBUNTU_CHAMPION, "Ubuntu Champion", 5000, None
    ),
}


@dataclass(frozen=True, slots=True)
class LevelUpResult:
    leveled_up: bool
    new_level: UbuntuLevel | None = None
    new_level_name: str | None = None


def get_ubuntu_level(score: int) -> LevelInfo:
    """Map a score to its level. Scores below zero count as newcomer."""
    for level in reversed(_LEVEL_ORDER):
        info = UBUNTU_LEVELS[level]
        if score >= info.min_score:
            return info
    return UBUNTU_LEVELS[UbuntuLevel.NEWCOMER]


def check_level_up(old_score: int, new_score: int) -> LevelUpResult:
    """Report a level change between two scores."""
    old_level = get_ubuntu_level(old_score)
    new_level = get_ubuntu_level(new_score)

    if new_level.level != old_level.level:
        return LevelUpResult(
            leveled_up=True,
            new_level=new_level.level,
            new_level_name=new_level.name,
        )

    return LevelUpResult(leveled_up=False)


def get_points_for_contribution(contribution_type: str) -> int:
    return UBUNTU_POINTS.get(contribution_type, 0)
