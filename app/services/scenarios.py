"""
SCENARIO BOOK
=============

Practice scenarios: a title, an icon, and an opening prompt the user can send
as their first message ("I'm at a coffee shop. You are the barista.").
Starts with a few defaults; users can add and remove their own. Kept in
memory for the lifetime of the server.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List

logger = logging.getLogger("FluentCoach")

DEFAULT_ICON = "✨"


@dataclass(frozen=True)
class Scenario:
    title: str
    prompt: str
    icon: str = "💬"


DEFAULT_SCENARIOS = (
    Scenario("Ordering Coffee", "I'm at a coffee shop. You are the barista.", "☕"),
    Scenario("Job Interview", "I'm applying for a job. You are the interviewer.", "💼"),
    Scenario("Ask for Directions", "I'm lost in London. Can you help me?", "🗺️"),
    Scenario("Daily Small Talk", "Let's just chat about our day.", "🏠"),
)


class ScenarioBook:
    """Ordered, thread-safe list of scenarios."""

    def __init__(self, scenarios=DEFAULT_SCENARIOS):
        self._lock = threading.Lock()
        self._scenarios: List[Scenario] = list(scenarios)

    def list(self) -> List[Scenario]:
        with self._lock:
            return list(self._scenarios)

    def add(self, title: str, prompt: str, icon: str = "") -> Scenario:
        """Append a scenario. Blank title or prompt raises ValueError; a blank icon becomes ✨."""
        if not title or not title.strip() or not prompt or not prompt.strip():
            raise ValueError("Scenario title and prompt must not be blank")
        scenario = Scenario(title.strip(), prompt.strip(), icon.strip() or DEFAULT_ICON)
        with self._lock:
            self._scenarios.append(scenario)
        logger.info("Scenario added: %s", scenario.title)
        return scenario

    def remove(self, title: str) -> bool:
        """Remove the first scenario with this title. Returns False if none matched."""
        with self._lock:
            for i, scenario in enumerate(self._scenarios):
                if scenario.title == title:
                    del self._scenarios[i]
                    logger.info("Scenario removed: %s", title)
                    return True
        return False
