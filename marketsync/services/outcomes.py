"""
Football outcome derivations.

Everything here is a pure function of scores and strings: derived outcomes
(1X2, over/under, BTTS, half-time variants), inference of a pool's outcome
type from its predicted-outcome text, normalisation of team-specific
predictions, and rendering of the oracle result string in the same
vocabulary the pool was created with.
"""
import re
from typing import Dict, Optional

OUTCOME_1X2 = "1X2"
OUTCOME_BTTS = "BTTS"
OUTCOME_HT_1X2 = "HT_1X2"
OUTCOME_DC = "DC"
OUTCOME_CS = "CS"

OVER_UNDER_TYPES = {"OU05": 0.5, "OU15": 1.5, "OU25": 2.5, "OU35": 3.5, "OU45": 4.5}
HT_OVER_UNDER_TYPES = {"HT_OU05": 0.5, "HT_OU15": 1.5}

OUTCOME_TYPES = (
    OUTCOME_1X2, *OVER_UNDER_TYPES, OUTCOME_BTTS,
    OUTCOME_HT_1X2, *HT_OVER_UNDER_TYPES, OUTCOME_DC, OUTCOME_CS,
)

DOUBLE_CHANCES = ("1X", "12", "X2")

_LINE_RE = re.compile(r"([0-4])\.5")
_CORRECT_SCORE_RE = re.compile(r"^\s*(\d+)\s*([-:])\s*(\d+)\s*$")
_HT_RE = re.compile(r"\bht\b|half[\s-]?time|1st half|first half")

_LONG_1X2 = {"1": "Home wins", "X": "Draw", "2": "Away wins"}
_SHORT_WORD_1X2 = {"1": "Home", "X": "Draw", "2": "Away"}


# =============================================================================
# SCORE DERIVATIONS
# =============================================================================

def outcome_1x2(home: int, away: int) -> str:
    """"1" home win, "2" away win, "X" draw."""
    if home > away:
        return "1"
    if home < away:
        return "2"
    return "X"


def outcome_over_under(home: int, away: int, line: float = 2.5) -> str:
    return "Over" if home + away > line else "Under"


def outcome_btts(home: int, away: int) -> str:
    return "Yes" if home >= 1 and away >= 1 else "No"


def derive_outcomes(
    home: int,
    away: int,
    ht_home: Optional[int] = None,
    ht_away: Optional[int] = None,
) -> Dict[str, Optional[str]]:
    """
    All stored derivations for a finished fixture.

    Returns:
        Dict with outcome_1x2, outcome_ou25, outcome_btts and outcome_ht_1x2
        (None when half-time scores are unknown)
    """
    has_ht = ht_home is not None and ht_away is not None
    return {
        "outcome_1x2": outcome_1x2(home, away),
        "outcome_ou25": outcome_over_under(home, away, 2.5),
        "outcome_btts": outcome_btts(home, away),
        "outcome_ht_1x2": outcome_1x2(ht_home, ht_away) if has_ht else None,
    }


# =============================================================================
# PREDICTED OUTCOME TEXT
# =============================================================================

def normalize_predicted_outcome(
    predicted: str,
    home_team: Optional[str] = None,
    away_team: Optional[str] = None,
) -> str:
    """
    Map team-specific or loosely worded predictions onto canonical text.

    "Arsenal wins" -> "Home wins", "x" -> "Draw", "over 2.5" -> "Over 2.5 goals",
    "Both teams score" -> "Both teams to score". Anything unrecognised is
    returned unchanged.
    """
    text = (predicted or "").strip()
    lowered = text.lower()

    if home_team and home_team.lower() in lowered:
        return "Home wins"
    if away_team and away_team.lower() in lowered:
        return "Away wins"
    if lowered == "x" or lowered == "draw":
        return "Draw"

    line = _LINE_RE.search(lowered)
    if line and not _HT_RE.search(lowered):
        if "over" in lowered:
            return f"Over {line.group(1)}.5 goals"
        if "under" in lowered:
            return f"Under {line.group(1)}.5 goals"

    if "not both" in lowered or ("btts" in lowered and "no" in lowered.split()):
        return "Not both teams to score"
    if "both" in lowered and "score" in lowered:
        return "Both teams to score"

    return text


def infer_outcome_type(predicted: str) -> str:
    """
    Infer the market's outcome type from predicted-outcome text.

    Falls back to 1X2 when nothing more specific matches.
    """
    lowered = (predicted or "").strip().lower()
    line = _LINE_RE.search(lowered)

    if _HT_RE.search(lowered):
        if line and ("over" in lowered or "under" in lowered):
            key = f"HT_OU{line.group(1)}5"
            if key in HT_OVER_UNDER_TYPES:
                return key
        return OUTCOME_HT_1X2

    if _CORRECT_SCORE_RE.match(lowered):
        return OUTCOME_CS

    if lowered.upper() in DOUBLE_CHANCES or "double chance" in lowered or " or " in lowered:
        return OUTCOME_DC

    if line and ("over" in lowered or "under" in lowered):
        key = f"OU{line.group(1)}5"
        if key in OVER_UNDER_TYPES:
            return key

    if lowered in ("over", "under"):
        return "OU25"

    if "btts" in lowered or ("both" in lowered and "score" in lowered) or lowered in ("yes", "no"):
        return OUTCOME_BTTS

    return OUTCOME_1X2


def _double_chance_of(predicted: str) -> Optional[str]:
    upper = predicted.strip().upper().replace(" ", "")
    if upper in DOUBLE_CHANCES:
        return upper
    lowered = predicted.lower()
    if "home" in lowered and "draw" in lowered:
        return "1X"
    if "home" in lowered and "away" in lowered:
        return "12"
    if "draw" in lowered and "away" in lowered:
        return "X2"
    return None


def _render_1x2(result: str, predicted: str, suffix: str = "") -> str:
    lowered = predicted.strip().lower()
    if lowered.replace(suffix.lower(), "").strip() in ("1", "x", "2"):
        return result + suffix
    if "wins" in lowered:
        return _LONG_1X2[result] + suffix
    return _SHORT_WORD_1X2[result] + suffix


def _render_over_under(side: str, line: float, predicted: str, suffix: str = "") -> str:
    lowered = predicted.lower()
    if not _LINE_RE.search(lowered):
        return side + suffix
    text = f"{side} {line}"
    if "goals" in lowered:
        text += " goals"
    return text + suffix


def render_result(
    outcome_type: str,
    predicted: str,
    home: int,
    away: int,
    ht_home: Optional[int] = None,
    ht_away: Optional[int] = None,
) -> Optional[str]:
    """
    Render the oracle result string in the vocabulary of the predicted outcome.

    A pool predicting "1" resolves to "1"/"X"/"2"; one predicting
    "Over 2.5 goals" resolves to "Over 2.5 goals"/"Under 2.5 goals".

    Returns:
        The result string, or None when the scores needed are unavailable
    """
    predicted = (predicted or "").strip()

    if outcome_type == OUTCOME_1X2:
        return _render_1x2(outcome_1x2(home, away), predicted)

    if outcome_type in OVER_UNDER_TYPES:
        line = OVER_UNDER_TYPES[outcome_type]
        return _render_over_under(outcome_over_under(home, away, line), line, predicted)

    if outcome_type == OUTCOME_BTTS:
        result = outcome_btts(home, away)
        if predicted.lower() in ("yes", "no"):
            return result
        return "Both teams to score" if result == "Yes" else "Not both teams to score"

    if outcome_type in (OUTCOME_HT_1X2, *HT_OVER_UNDER_TYPES):
        if ht_home is None or ht_away is None:
            return None
        if outcome_type == OUTCOME_HT_1X2:
            return _render_1x2(outcome_1x2(ht_home, ht_away), predicted, suffix=" HT")
        line = HT_OVER_UNDER_TYPES[outcome_type]
        return _render_over_under(outcome_over_under(ht_home, ht_away, line), line, predicted, suffix=" HT")

    if outcome_type == OUTCOME_DC:
        actual = outcome_1x2(home, away)
        chosen = _double_chance_of(predicted)
        if chosen and actual in chosen:
            return chosen
        return next(dc for dc in DOUBLE_CHANCES if actual in dc and dc != chosen)

    if outcome_type == OUTCOME_CS:
        match = _CORRECT_SCORE_RE.match(predicted)
        separator = match.group(2) if match else "-"
        return f"{home}{separator}{away}"

    return None
