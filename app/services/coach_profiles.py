"""
COACH PROFILES
==============

The fixed set of coach personas. Each one is just a system prompt that shapes
how the LLM answers. Switching persona starts a fresh conversation (see
ChatSession.change_role).
"""

from dataclasses import dataclass
from typing import Dict, List

from config import COACH_DEFAULT_ROLE


@dataclass(frozen=True)
class CoachProfile:
    id: str
    display_name: str
    system_prompt: str


DAILY_COACH = CoachProfile(
    id="daily_coach",
    display_name="Daily Coach",
    system_prompt="You are a helpful English speaking coach. Keep responses brief and natural.",
)

TOEFL_EXAMINER = CoachProfile(
    id="toefl_examiner",
    display_name="TOEFL Examiner",
    system_prompt=(
        "You are a professional TOEFL Speaking examiner. "
        "Respond briefly, then add a 'Correction:' section if needed."
    ),
)

CAMPUS_BUDDY = CoachProfile(
    id="campus_buddy",
    display_name="Campus Buddy",
    system_prompt="You are a friendly American college student. Use campus slang.",
)

COACH_PROFILES: Dict[str, CoachProfile] = {
    profile.id: profile for profile in (DAILY_COACH, TOEFL_EXAMINER, CAMPUS_BUDDY)
}


def get_profile(profile_id: str) -> CoachProfile:
    """Look up a profile by id. Raises ValueError for unknown ids."""
    try:
        return COACH_PROFILES[profile_id]
    except KeyError:
        known = ", ".join(COACH_PROFILES)
        raise ValueError(f"Unknown coach role {profile_id!r} (known: {known})") from None


def list_profiles() -> List[CoachProfile]:
    return list(COACH_PROFILES.values())


DEFAULT_PROFILE = COACH_PROFILES.get(COACH_DEFAULT_ROLE, DAILY_COACH)
