"""Ask a language model for feedback on the journal.

Two requests are supported, both against the Gemini REST API:

- Habit analysis: every position is summarized as text (buys with their setup
  tags, sells with P/L, hold duration and the trader's "Lesson Learnt" notes)
  and the model answers with structured JSON listing positive habits, areas
  for improvement, and one paragraph of actionable feedback.
- Second opinion: a ticker, the stated buy reasons and a chart screenshot are
  sent to the streaming endpoint and the markdown answer arrives in chunks.

Nothing in here touches a Journal. Callers pass a snapshot of positions, and
every failure (missing key, HTTP error, timeout, unparseable reply) comes back
as AnalysisOutcome(ok=False, ...) instead of an exception.
"""

from __future__ import annotations

import asyncio
import datetime
import re
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

import aiohttp
import orjson
from jinja2 import BaseLoader, Environment
from loguru import logger

from .ledger import Position, num

API_BASE: Final = "https://generativelanguage.googleapis.com/v1beta"

# habit analysis needs enough closed-out behavior to say anything useful
MIN_SELLS_FOR_ANALYSIS: Final = 3

CURRENCY: Final = "RM"

Failure = Enum(
    "Failure", "InsufficientData NotConfigured InvalidInput RequestFailed BadResponse"
)

DATA_URL = re.compile(r"^data:(image/.+);base64,(.+)$", re.DOTALL)

ANALYSIS_SCHEMA: Final = {
    "type": "OBJECT",
    "properties": {
        "positiveHabits": {
            "type": "ARRAY",
            "description": "List of observed positive trading habits or patterns, including scaling in/out strategies. Each item should be a concise sentence.",
            "items": {"type": "STRING"},
        },
        "areasForImprovement": {
            "type": "ARRAY",
            "description": "List of potential biases or negative patterns observed (e.g., FOMO, revenge trading, poor scaling). Each item should be a concise sentence.",
            "items": {"type": "STRING"},
        },
        "actionableFeedback": {
            "type": "STRING",
            "description": "A summary paragraph providing concrete, actionable advice for improvement based on the analysis. Be encouraging but direct.",
        },
    },
    "required": ["positiveHabits", "areasForImprovement", "actionableFeedback"],
}

BUILTIN_TEMPLATES = {
    "positions.txt": """
{% for p in positions %}
Position: {{ p.ticker }}
- Buy Transactions:
{% for b in p.buys %}
  - Bought {{ b.lots }} lots on {{ b.when }} at {{ currency }}{{ '%.2f' | format(b.price) }}. Reason: "{{ b.reasons }}"
{% endfor %}
{% if p.sells %}
- Sell Transactions:
{% for s in p.sells %}
  - Sold {{ s.lots }} lots on {{ s.when }} for a P/L of {{ currency }}{{ '%.2f' | format(s.pl) }}. Held for approx {{ s.held }} days. Sell Reason: "{{ s.reason }}"
{% if s.notes %}
    - Lesson Learnt: "{{ s.notes }}"
{% endif %}
{% endfor %}
{% else %}
- Position is still open (no sells yet).
{% endif %}
{% endfor %}
""",
    "habits.txt": """
You are a professional trading psychologist. Analyze the following trading journal entries and identify behavioral patterns.
Provide an analysis of the trader's habits based on their reasoning for buying and selling, how they scale in (partial buys) and scale out (partial sells), lot sizes, P/L, and hold durations.
Also consider their self-reflected "Lesson Learnt" notes, as they provide critical insight into their mindset.
Do not invent information. Base your analysis strictly on the data provided.
Focus on the psychological aspects suggested by their reasoning, position sizing, and entry/exit strategies.

Here are the positions:
{{ summary }}

Please provide your analysis in the structured JSON format.
""",
    "second_opinion.txt": """
You are an expert trading analyst providing a "second opinion" on a trade setup.
Your tone should be objective, balanced, and educational, like a mentor.
Do not give direct financial advice to buy or sell.
Analyze the provided chart image and the trader's stated reasons for entry.
Provide a concise analysis in Markdown format.

**Ticker:** {{ ticker | upper }}
**Stated Buy Reasons:** {{ reasons | join(', ') }}

Based on the chart and reasons, provide the following:
- **Strengths:** 2-3 bullet points on what looks promising about this setup.
- **Potential Risks:** 2-3 bullet points on potential weaknesses, risks, or things to watch out for.
- **Key Level to Watch:** Identify one critical price level (e.g., support, resistance, breakout point) and explain its significance.

Keep the entire analysis brief and to the point.
""",
}

jinja_env = Environment(loader=BaseLoader(), trim_blocks=True, lstrip_blocks=True)


def render(name: str, **args) -> str:
    return jinja_env.from_string(BUILTIN_TEMPLATES[name]).render(**args).strip()


class AdvisorError(Exception):
    def __init__(self, reason: Failure, message: str):
        self.reason = reason
        super().__init__(message)


@dataclass(slots=True, frozen=True)
class HabitAnalysis:
    positive_habits: list[str]
    areas_for_improvement: list[str]
    actionable_feedback: str


@dataclass(slots=True)
class AnalysisOutcome:
    """Result of one advisor request.

    On success 'analysis' (habit analysis) or 'text' (second opinion) is set.
    On failure 'reason' says what kind of failure and 'error' is readable."""

    ok: bool
    analysis: HabitAnalysis | None = None
    text: str | None = None
    reason: Failure | None = None
    error: str | None = None

    @classmethod
    def failed(cls, reason: Failure, error: str) -> AnalysisOutcome:
        return cls(False, reason=reason, error=error)


def hold_days(position: Position, sold_on: datetime.date | None) -> int | None:
    """Days between the latest buy on/before 'sold_on' and 'sold_on'.

    Falls back to the first buy when no buy precedes the sell."""
    if sold_on is None:
        return None

    dated = [b.buy_date for b in position.buys if b.buy_date]
    if not dated:
        return None

    before = [d for d in dated if d <= sold_on]
    bought_on = max(before) if before else position.buys[0].buy_date or dated[0]
    return max(0, (sold_on - bought_on).days)


def summarize_positions(positions: Iterable[Position]) -> str:
    """Plain-text digest of positions used as the habit analysis input.

    Sell P/L is measured against each position's blended average cost."""
    rows = []
    for p in positions:
        basis = p.avg_buy_price
        rows.append(
            dict(
                ticker=p.ticker,
                buys=[
                    dict(
                        lots=b.lot_size,
                        when=b.buy_date or "unknown date",
                        price=num(b.buy_price),
                        reasons=", ".join(b.buy_reason or []),
                    )
                    for b in p.buys
                ],
                sells=[
                    dict(
                        lots=s.lot_size,
                        when=s.sell_date or "unknown date",
                        pl=p.sell_pl(s, basis),
                        held=h if (h := hold_days(p, s.sell_date)) is not None else "?",
                        reason=s.sell_reason or "",
                        notes=s.notes,
                    )
                    for s in p.sells
                ],
            )
        )

    return render("positions.txt", positions=rows, currency=CURRENCY)


def count_sells(positions: Iterable[Position]) -> int:
    return sum([len(p.sells) for p in positions])


def response_text(response: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate in a generateContent reply."""
    try:
        parts = response["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""

    if not isinstance(parts, list):
        return ""

    return "".join(
        [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
    )


def parse_sse_line(line: bytes) -> dict[str, Any] | None:
    """Decode one 'data: {...}' server-sent-event line, None for anything else."""
    line = line.strip()
    if not line.startswith(b"data:"):
        return None

    payload = line[5:].strip()
    if not payload:
        return None

    try:
        return orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise AdvisorError(Failure.BadResponse, f"Unreadable stream event: {e}")


def parse_analysis(text: str) -> HabitAnalysis:
    try:
        found = orjson.loads(text.strip())
    except orjson.JSONDecodeError as e:
        raise AdvisorError(Failure.BadResponse, f"Analysis wasn't JSON: {e}")

    if not isinstance(found, dict):
        raise AdvisorError(Failure.BadResponse, "Analysis wasn't a JSON object")

    try:
        return HabitAnalysis(
            positive_habits=[str(x) for x in found["positiveHabits"]],
            areas_for_improvement=[str(x) for x in found["areasForImprovement"]],
            actionable_feedback=str(found["actionableFeedback"]),
        )
    except (KeyError, TypeError) as e:
        raise AdvisorError(Failure.BadResponse, f"Analysis missing field: {e}")


@dataclass
class Advisor:
    """Gemini REST client for journal feedback.

    Usage:
        advisor = Advisor(api_key)
        outcome = await advisor.analyze_habits(journal.snapshot())
        await advisor.close()
    """

    api_key: str | None
    model: str = "gemini-2.5-flash"
    session: aiohttp.ClientSession | None = None
    timeout: float = 120.0
    api_base: str = API_BASE

    headers: dict[str, str] = field(init=False)

    def __post_init__(self):
        self.headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key or "",
        }

    @classmethod
    def from_settings(cls, settings) -> Advisor:
        return cls(settings.gemini_api_key, settings.gemini_model)

    async def setup(self) -> aiohttp.ClientSession:
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

        return self.session

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def url(self, method: str) -> str:
        return f"{self.api_base}/models/{self.model}:{method}"

    async def _generate(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise AdvisorError(Failure.NotConfigured, "No Gemini API key configured")

        session = await self.setup()
        try:
            async with session.post(
                self.url("generateContent"), headers=self.headers, data=orjson.dumps(body)
            ) as got:
                raw = await got.read()
                if got.status != 200:
                    raise AdvisorError(
                        Failure.RequestFailed,
                        f"Gemini returned HTTP {got.status}: {raw[:200]!r}",
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AdvisorError(Failure.RequestFailed, f"Gemini request failed: {e}")

        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise AdvisorError(Failure.BadResponse, f"Gemini reply wasn't JSON: {e}")

    async def _stream(self, body: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        if not self.api_key:
            raise AdvisorError(Failure.NotConfigured, "No Gemini API key configured")

        session = await self.setup()
        try:
            async with session.post(
                self.url("streamGenerateContent") + "?alt=sse",
                headers=self.headers,
                data=orjson.dumps(body),
            ) as got:
                if got.status != 200:
                    raw = await got.read()
                    raise AdvisorError(
                        Failure.RequestFailed,
                        f"Gemini returned HTTP {got.status}: {raw[:200]!r}",
                    )

                async for line in got.content:
                    if (event := parse_sse_line(line)) is not None:
                        yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AdvisorError(Failure.RequestFailed, f"Gemini stream failed: {e}")

    async def analyze_habits(self, positions: Iterable[Position]) -> AnalysisOutcome:
        """Structured habit feedback for 'positions'.

        Requires at least MIN_SELLS_FOR_ANALYSIS sells; below that no request
        is made and the outcome reports Failure.InsufficientData."""
        positions = list(positions)
        if (sells := count_sells(positions)) < MIN_SELLS_FOR_ANALYSIS:
            return AnalysisOutcome.failed(
                Failure.InsufficientData,
                f"You need at least {MIN_SELLS_FOR_ANALYSIS} sell transactions "
                f"for an analysis (have {sells}).",
            )

        prompt = render("habits.txt", summary=summarize_positions(positions))
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": ANALYSIS_SCHEMA,
            },
        }

        try:
            response = await self._generate(body)
            analysis = parse_analysis(response_text(response))
        except AdvisorError as e:
            logger.exception("Habit analysis failed")
            return AnalysisOutcome.failed(e.reason, str(e))
        except asyncio.CancelledError:
            logger.warning("Habit analysis cancelled")
            raise

        logger.info(
            "Habit analysis: {} positive, {} to improve",
            len(analysis.positive_habits),
            len(analysis.areas_for_improvement),
        )
        return AnalysisOutcome(True, analysis=analysis)

    async def stream_second_opinion(
        self, ticker: str, reasons: list[str], chart_image: str
    ) -> AsyncIterator[str]:
        """Yield markdown chunks of a second opinion on a trade setup.

        'chart_image' must be a data URL ("data:image/png;base64,...").
        Raises AdvisorError for bad input or a failed request."""
        if not ticker or not reasons or not chart_image:
            raise AdvisorError(
                Failure.InvalidInput, "Ticker, buy reasons, and chart image are required."
            )

        if not (found := DATA_URL.match(chart_image)):
            raise AdvisorError(
                Failure.InvalidInput, "Invalid image format. Expected a data URL."
            )

        mime_type, data = found.groups()
        prompt = render("second_opinion.txt", ticker=ticker, reasons=reasons)
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": mime_type, "data": data}},
                    ]
                }
            ]
        }

        async for event in self._stream(body):
            if chunk := response_text(event):
                yield chunk

    async def second_opinion(
        self, ticker: str, reasons: list[str], chart_image: str
    ) -> AnalysisOutcome:
        """Collect the whole streamed second opinion into one outcome."""
        chunks = []
        try:
            async for chunk in self.stream_second_opinion(ticker, reasons, chart_image):
                chunks.append(chunk)
        except AdvisorError as e:
            logger.exception("[{}] Second opinion failed", ticker)
            return AnalysisOutcome.failed(e.reason, str(e))
        except asyncio.CancelledError:
            logger.warning("[{}] Second opinion cancelled", ticker)
            raise

        if not chunks:
            return AnalysisOutcome.failed(Failure.BadResponse, "Empty reply from Gemini")

        return AnalysisOutcome(True, text="".join(chunks))
