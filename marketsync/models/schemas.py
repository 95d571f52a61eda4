"""
Typed codecs for the JSON payload columns.

Slip predictions are a sum type tagged by `bet_type`; cycle matches and
cycle results have fixed shapes. Rows are parsed through these models at
read and write boundaries so no component touches raw dicts.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

MONEYLINE = "MONEYLINE"
OVER_UNDER = "OVER_UNDER"

# On-chain betType enum
BET_TYPE_CODES = {0: MONEYLINE, 1: OVER_UNDER}


class MoneylinePrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    bet_type: Literal["MONEYLINE"] = MONEYLINE
    fixture_id: str
    selection: Literal["1", "X", "2"]
    selected_odd: int = Field(gt=0)  # x1000


class OverUnderPrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    bet_type: Literal["OVER_UNDER"] = OVER_UNDER
    fixture_id: str
    selection: Literal["Over", "Under"]
    selected_odd: int = Field(gt=0)  # x1000


SlipPrediction = Annotated[
    Union[MoneylinePrediction, OverUnderPrediction],
    Field(discriminator="bet_type"),
]

_predictions_adapter = TypeAdapter(List[SlipPrediction])


def parse_predictions(payload) -> List[Union[MoneylinePrediction, OverUnderPrediction]]:
    """Parse a stored predictions array."""
    return _predictions_adapter.validate_python(payload)


def dump_predictions(predictions) -> list:
    """Serialise predictions for a JSON column."""
    return _predictions_adapter.dump_python(list(predictions), mode="json")


def prediction_from_chain(match_id: int, bet_type: int, selection: str, selected_odd: int):
    """
    Build a typed prediction from a decoded getSlip tuple entry.

    Raises:
        ValueError: Unknown bet type or a selection that does not fit it
    """
    if bet_type not in BET_TYPE_CODES:
        raise ValueError(f"Unknown bet type {bet_type}")
    payload = {
        "bet_type": BET_TYPE_CODES[bet_type],
        "fixture_id": str(match_id),
        "selection": selection,
        "selected_odd": selected_odd,
    }
    return _predictions_adapter.validate_python([payload])[0]


class CycleMatch(BaseModel):
    """One of the fixtures a cycle is opened with (odds scaled x1000)."""
    model_config = ConfigDict(frozen=True)

    fixture_id: str
    start_time: int  # unix seconds
    odds_home: int
    odds_draw: int
    odds_away: int
    odds_over: int
    odds_under: int
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    league_name: Optional[str] = None

    @field_validator("odds_home", "odds_draw", "odds_away", "odds_over", "odds_under")
    @classmethod
    def _positive_odds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("odds must be positive")
        return value

    def to_chain_tuple(self) -> tuple:
        """Match struct for startDailyCycle; the result slot starts unset."""
        return (
            int(self.fixture_id), self.start_time,
            self.odds_home, self.odds_draw, self.odds_away,
            self.odds_over, self.odds_under,
            (0, 0),
        )


class CycleResult(BaseModel):
    """Resolved slot as sent to resolveDailyCycle."""
    model_config = ConfigDict(frozen=True)

    fixture_id: str
    moneyline: int  # MoneylineResult enum
    over_under: int  # OverUnderResult enum
    status: str
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    def to_chain_tuple(self) -> tuple:
        return (self.moneyline, self.over_under)


_matches_adapter = TypeAdapter(List[CycleMatch])
_results_adapter = TypeAdapter(List[CycleResult])


def parse_cycle_matches(payload) -> List[CycleMatch]:
    return _matches_adapter.validate_python(payload or [])


def dump_cycle_matches(matches) -> list:
    return _matches_adapter.dump_python(list(matches), mode="json")


def parse_cycle_results(payload) -> List[CycleResult]:
    return _results_adapter.validate_python(payload or [])


def dump_cycle_results(results) -> list:
    return _results_adapter.dump_python(list(results), mode="json")
