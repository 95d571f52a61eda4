"""
SportMonks results fetcher.

Two jobs use this service:
- fetch-fixtures: upcoming fixtures with 1X2 and over/under 2.5 odds
- fetch-results: final scores for fixtures that kicked off recently

Only terminal states are persisted as results. Finished fixtures get their
derived outcomes computed from the 90-minute score; for extra-time and
penalty matches that score is 1ST_HALF + 2ND_HALF, never CURRENT.

API Documentation: https://docs.sportmonks.com/football/
"""
import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.orm import sessionmaker

from marketsync.chain.contracts import unix_to_datetime
from marketsync.core.database import session_scope
from marketsync.core.errors import ProviderError, TransientProviderError
from marketsync.core.logging import get_logger
from marketsync.core.retry import HTTP_RETRY_POLICY, RetryPolicy
from marketsync.repositories import FixtureRepository, FixtureResultRepository
from marketsync.services.outcomes import derive_outcomes

logger = get_logger(__name__)

SPORTMONKS_BASE = "https://api.sportmonks.com/v3/football"

FIXTURE_INCLUDES = "league;participants;odds"
RESULT_INCLUDES = "scores;participants;state"

# SportMonks state developer names
FINISHED_STATES = {"FT", "AET", "FT_PEN", "PEN"}
EXTRA_TIME_STATES = {"AET", "FT_PEN", "PEN"}
CANCELLED_STATES = {"CANCL", "ABAN", "DELETED", "WO", "AWARDED"}
POSTPONED_STATES = {"POSTP", "SUSP", "DELAYED", "TBA", "INTERRUPTED"}
SCHEDULED_STATES = {"NS"}

TERMINAL_STATUSES = ("finished", "cancelled")

MARKET_FULLTIME_RESULT = 1
MARKET_GOALS_OVER_UNDER = 80

# /fixtures/multi accepts up to 50 ids
MULTI_CHUNK = 50


@dataclass
class FetchResult:
    fixtures: int = 0
    results: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParsedResult:
    fixture_id: str
    status: str
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    ht_home_score: Optional[int] = None
    ht_away_score: Optional[int] = None
    score_type: Optional[str] = None


def normalize_status(state: Optional[str]) -> str:
    """Map a SportMonks state to scheduled, in-play, finished, cancelled or postponed."""
    state = (state or "").upper()
    if state in FINISHED_STATES:
        return "finished"
    if state in CANCELLED_STATES:
        return "cancelled"
    if state in POSTPONED_STATES:
        return "postponed"
    if state in SCHEDULED_STATES or not state:
        return "scheduled"
    return "in-play"


def _participants(fixture: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    home = away = None
    for participant in fixture.get("participants") or []:
        location = (participant.get("meta") or {}).get("location")
        if location == "home":
            home = participant.get("name")
        elif location == "away":
            away = participant.get("name")
    return home, away


def score_for(scores: List[Dict[str, Any]], description: str) -> Optional[Tuple[int, int]]:
    """
    (home, away) goals for one score description, e.g. "CURRENT" or "1ST_HALF".

    Returns None unless both sides are present.
    """
    home = away = None
    for entry in scores or []:
        if entry.get("description") != description:
            continue
        score = entry.get("score") or {}
        try:
            goals = int(score.get("goals"))
        except (TypeError, ValueError):
            continue
        if score.get("participant") == "home":
            home = goals
        elif score.get("participant") == "away":
            away = goals
    if home is None or away is None:
        return None
    return home, away


def parse_fixture_result(fixture: Dict[str, Any]) -> Optional[ParsedResult]:
    """
    Parse a fixture payload (with scores and state) into a result.

    Returns:
        A ParsedResult for terminal and postponed states, None for other
        states and for finished fixtures whose 90-minute score is not available
    """
    fixture_id = str(fixture["id"])
    state = ((fixture.get("state") or {}).get("developer_name")
             or (fixture.get("state") or {}).get("state") or "")
    status = normalize_status(state)

    if status in ("cancelled", "postponed"):
        return ParsedResult(fixture_id, status)
    if status != "finished":
        return None

    scores = fixture.get("scores") or []
    first_half = score_for(scores, "1ST_HALF")

    if state.upper() in EXTRA_TIME_STATES:
        second_half = score_for(scores, "2ND_HALF")
        if first_half is None or second_half is None:
            logger.warning(f"⚠️ Fixture {fixture_id} ({state}) lacks half scores; cannot derive 90-minute score")
            return None
        full_time = (first_half[0] + second_half[0], first_half[1] + second_half[1])
        score_type = "FT_90MIN"
    else:
        full_time = score_for(scores, "CURRENT")
        if full_time is None:
            logger.warning(f"⚠️ Fixture {fixture_id} is finished but has no CURRENT score")
            return None
        score_type = "CURRENT"

    return ParsedResult(
        fixture_id=fixture_id,
        status=status,
        home_score=full_time[0],
        away_score=full_time[1],
        ht_home_score=first_half[0] if first_half else None,
        ht_away_score=first_half[1] if first_half else None,
        score_type=score_type,
    )


def _odd_value(odd: Dict[str, Any], upper: float = 100.0) -> Optional[float]:
    try:
        value = float(odd.get("value"))
    except (TypeError, ValueError):
        return None
    return value if 1.0 < value < upper else None


def extract_odds(odds: List[Dict[str, Any]]) -> Dict[str, Optional[float]]:
    """1X2 (market 1) and over/under 2.5 (market 80) decimal odds."""
    extracted: Dict[str, Optional[float]] = {
        "odds_home": None, "odds_draw": None, "odds_away": None,
        "odds_over_25": None, "odds_under_25": None,
    }
    labels_1x2 = {"1": "odds_home", "home": "odds_home", "x": "odds_draw", "draw": "odds_draw",
                  "2": "odds_away", "away": "odds_away"}

    for odd in odds or []:
        try:
            market = int(odd.get("market_id"))
        except (TypeError, ValueError):
            continue
        label = str(odd.get("label") or "").strip().lower()

        if market == MARKET_FULLTIME_RESULT and label in labels_1x2:
            key = labels_1x2[label]
            if extracted[key] is None:
                extracted[key] = _odd_value(odd)
        elif market == MARKET_GOALS_OVER_UNDER:
            total = odd.get("total") or odd.get("name")
            try:
                if float(total) != 2.5:
                    continue
            except (TypeError, ValueError):
                continue
            key = "odds_over_25" if "over" in label else "odds_under_25" if "under" in label else None
            if key and extracted[key] is None:
                extracted[key] = _odd_value(odd, upper=10.0)
    return extracted


def parse_fixture(fixture: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Fixture row values from a /fixtures/date payload (None without both teams)."""
    home, away = _participants(fixture)
    if not home or not away:
        return None

    if fixture.get("starting_at_timestamp"):
        starting_at = unix_to_datetime(fixture["starting_at_timestamp"])
    else:
        starting_at = datetime.strptime(fixture["starting_at"], "%Y-%m-%d %H:%M:%S")

    league = fixture.get("league") or {}
    state = (fixture.get("state") or {}).get("developer_name")
    values = {
        "league_id": str(fixture.get("league_id") or league.get("id") or "") or None,
        "league_name": league.get("name"),
        "home_team": home,
        "away_team": away,
        "starting_at": starting_at,
        "status": normalize_status(state),
    }
    values.update(extract_odds(fixture.get("odds") or []))
    return values


class ResultsFetcher:
    """
    SportMonks v3 client plus persistence of fixtures and results.

    Pagination is followed to exhaustion with a fixed delay between pages.
    """

    def __init__(
        self,
        api_token: str,
        session_factory: sessionmaker,
        base_url: str = SPORTMONKS_BASE,
        retry_policy: RetryPolicy = HTTP_RETRY_POLICY,
        page_delay: float = 0.25,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_token = api_token
        self.session_factory = session_factory
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy
        self.page_delay = page_delay
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET with retries on transient failures.

        Raises:
            TransientProviderError: Retry budget exhausted
            ProviderError: 4xx or unparseable response
        """
        query = dict(params or {})
        query["api_token"] = self.api_token
        url = f"{self.base_url}{path}"

        async for attempt in self.retry_policy.retrying((TransientProviderError,), sleep=self._sleep):
            with attempt:
                return await self._get_once(url, query)

    async def _get_once(self, url: str, query: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(url, params=query)
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"HTTP {response.status_code} from {url}", response.status_code)
        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code} from {url}", response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from {url}") from exc

    async def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        """Yield every item of a paginated endpoint."""
        page = 1
        while True:
            payload = await self._get(path, {**(params or {}), "page": page, "per_page": 50})
            items = payload.get("data") or []
            if isinstance(items, dict):
                items = [items]
            for item in items:
                yield item

            pagination = payload.get("pagination") or {}
            if not items or not pagination.get("has_more"):
                return
            page += 1
            await self._sleep(self.page_delay)

    # ========================================================================
    # Fixtures
    # ========================================================================

    async def fetch_fixtures(self, start: Optional[date] = None, days: int = 7) -> FetchResult:
        """Upsert fixtures (with odds) for `days` dates starting at `start`."""
        start = start or datetime.utcnow().date()
        result = FetchResult()

        for offset in range(days):
            day = start + timedelta(days=offset)
            try:
                fixtures = [f async for f in self._paginate(
                    f"/fixtures/date/{day.isoformat()}", {"include": FIXTURE_INCLUDES}
                )]
            except ProviderError as exc:
                logger.error(f"❌ Fetching fixtures for {day} failed: {exc}")
                result.errors.append(f"{day}: {exc}")
                continue

            with session_scope(self.session_factory) as db:
                repo = FixtureRepository(db)
                for fixture in fixtures:
                    values = parse_fixture(fixture)
                    if values is None:
                        result.skipped += 1
                        continue
                    repo.upsert(str(fixture["id"]), **values)
                    result.fixtures += 1

        logger.info(f"✅ Fetched {result.fixtures} fixtures over {days} days ({result.skipped} skipped)")
        return result

    # ========================================================================
    # Results
    # ========================================================================

    async def fetch_results(self, now: Optional[datetime] = None, lookback_days: int = 2) -> FetchResult:
        """
        Persist terminal results for fixtures that kicked off in the lookback window.

        Non-terminal fixtures are left untouched. Already-finished results keep
        their original finished_at.
        """
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            pending = [
                f.fixture_id for f in FixtureRepository(db).find_unfinished_started_between(
                    now - timedelta(days=lookback_days), now
                )
            ]

        result = FetchResult()
        if not pending:
            logger.debug("No fixtures awaiting results")
            return result

        for index in range(0, len(pending), MULTI_CHUNK):
            chunk = pending[index:index + MULTI_CHUNK]
            try:
                payload = await self._get(f"/fixtures/multi/{','.join(chunk)}", {"include": RESULT_INCLUDES})
            except ProviderError as exc:
                logger.error(f"❌ Fetching results for {len(chunk)} fixtures failed: {exc}")
                result.errors.append(str(exc))
                continue

            parsed = []
            for fixture in payload.get("data") or []:
                item = parse_fixture_result(fixture)
                if item is None:
                    result.skipped += 1
                else:
                    parsed.append(item)

            self._save_results(parsed, now)
            result.results += len(parsed)

            if index + MULTI_CHUNK < len(pending):
                await self._sleep(self.page_delay)

        logger.info(
            f"✅ Results: {result.results} terminal, {result.skipped} not final "
            f"out of {len(pending)} fixtures"
        )
        return result

    def _save_results(self, parsed: List[ParsedResult], now: datetime) -> None:
        if not parsed:
            return
        with session_scope(self.session_factory) as db:
            results = FixtureResultRepository(db)
            fixtures = FixtureRepository(db)
            existing = results.find_many([p.fixture_id for p in parsed])

            for item in parsed:
                values: Dict[str, Any] = {"status": item.status}
                if item.status == "finished":
                    values.update(
                        home_score=item.home_score,
                        away_score=item.away_score,
                        ht_home_score=item.ht_home_score,
                        ht_away_score=item.ht_away_score,
                        score_type=item.score_type,
                        **derive_outcomes(item.home_score, item.away_score, item.ht_home_score, item.ht_away_score),
                    )
                previous = existing.get(item.fixture_id)
                if item.status in TERMINAL_STATUSES and (previous is None or previous.finished_at is None):
                    values["finished_at"] = now
                results.upsert(item.fixture_id, **values)

                fixture = fixtures.find_by_id(item.fixture_id)
                if fixture is not None:
                    fixture.status = item.status
            db.flush()
