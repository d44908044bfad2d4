"""Technical indicators for the advisory prompt.

Candles are rebuilt from the merged timeframe samples of one market, so
nothing here keeps its own history. Every indicator returns None until it
has enough candles; ``calculate_all`` reports how many of the nine were
available. Indicators never gate entries: they only give the advisor more
to read.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

log = logging.getLogger("heimdall.strategy.indicators")

MIN_CANDLES = 5
INDICATORS_TOTAL = 9
MACD_MIN_CLOSES = 35

SR_MIN_PRICES = 100
SR_SWING_WINDOW = 40
SR_CLUSTER_PCT = 0.005
SR_MAX_LEVELS = 5

PATTERN_CANDLES = 5
RECENT_PRICES = 10

# (label, candle seconds) rendered into the prompt, slowest first
CANDLE_FRAMES = (("5-MIN", 300.0), ("1-MIN", 60.0))
PATTERN_FRAME = ("1m", 60.0)


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float
    time: float


@dataclass(frozen=True)
class MACD:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class Bollinger:
    upper: float
    middle: float
    lower: float
    bandwidth: float    # % of the middle band


@dataclass(frozen=True)
class StochRSI:
    k: float
    d: float


@dataclass(frozen=True)
class ADX:
    adx: float
    plus_di: float
    minus_di: float


@dataclass
class Indicators:
    ready: bool = False
    candles: int = 0
    ema9: Optional[float] = None
    ema21: Optional[float] = None
    ema50: Optional[float] = None
    prev_ema9: Optional[float] = None
    prev_ema21: Optional[float] = None
    rsi: Optional[float] = None
    macd: Optional[MACD] = None
    bollinger: Optional[Bollinger] = None
    atr: Optional[float] = None
    stoch_rsi: Optional[StochRSI] = None
    adx: Optional[ADX] = None

    @property
    def available(self) -> int:
        values = (self.ema9, self.ema21, self.ema50, self.rsi, self.macd,
                  self.bollinger, self.atr, self.stoch_rsi, self.adx)
        return sum(v is not None for v in values)


@dataclass(frozen=True)
class Level:
    price: float
    touches: int
    strength: str           # STRONG | MODERATE | WEAK
    span_minutes: int
    distance_pct: float     # signed, relative to the current price


@dataclass
class SupportResistance:
    supports: list[Level] = field(default_factory=list)
    resistances: list[Level] = field(default_factory=list)


@dataclass(frozen=True)
class CandlePattern:
    candle: int             # 1-based within the analysed tail
    type: str
    signal: str
    desc: str


@dataclass
class PatternAnalysis:
    patterns: list[CandlePattern] = field(default_factory=list)
    summary: str = "Not enough candle data"


@dataclass
class TechnicalContext:
    """Everything the advisory prompt shows beyond the order book."""
    frames: list[tuple[str, Indicators]] = field(default_factory=list)
    levels: SupportResistance = field(default_factory=SupportResistance)
    patterns: PatternAnalysis = field(default_factory=PatternAnalysis)
    recent_prices: list[float] = field(default_factory=list)


# ── Candles ──

def build_candles(prices: Sequence[float], times: Sequence[float], interval_seconds: float) -> list[Candle]:
    """Bucket time-ordered samples into OHLC candles.

    A candle opens at its first sample and takes every sample before
    ``open time + interval``.
    """
    if len(prices) < 2:
        return []
    candles = []
    i = 0
    while i < len(prices):
        start = times[i]
        open_ = high = low = close = prices[i]
        while i < len(prices) and times[i] < start + interval_seconds:
            high = max(high, prices[i])
            low = min(low, prices[i])
            close = prices[i]
            i += 1
        candles.append(Candle(open_, high, low, close, start))
    return candles


def _closes(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


# ── Moving averages / oscillators ──

def ema_series(data, period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first ``period`` values."""
    data = np.asarray(data, dtype=float)
    if len(data) < period:
        return np.array([])
    k = 2 / (period + 1)
    out = np.empty(len(data) - period + 1)
    out[0] = np.mean(data[:period])
    for i, value in enumerate(data[period:], start=1):
        out[i] = value * k + out[i - 1] * (1 - k)
    return out


def ema(data, period: int) -> Optional[float]:
    series = ema_series(data, period)
    return float(series[-1]) if len(series) else None


def rsi_series(closes, period: int = 14) -> np.ndarray:
    """Wilder-smoothed RSI, one value per close after the first ``period``."""
    closes = np.asarray(closes, dtype=float)
    if len(closes) < period + 1:
        return np.array([])
    deltas = np.diff(closes)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)
    avg_gain = np.mean(gains[:period])
    avg_loss = np.mean(losses[:period])
    out = [_rsi_value(avg_gain, avg_loss)]
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out.append(_rsi_value(avg_gain, avg_loss))
    return np.array(out)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    return float(100 - 100 / (1 + avg_gain / avg_loss))


def rsi(closes, period: int = 14) -> Optional[float]:
    series = rsi_series(closes, period)
    return float(series[-1]) if len(series) else None


def macd(closes) -> Optional[MACD]:
    closes = np.asarray(closes, dtype=float)
    if len(closes) < MACD_MIN_CLOSES:
        return None
    ema12 = ema_series(closes, 12)
    ema26 = ema_series(closes, 26)
    line = ema12[-len(ema26):] - ema26
    signal = ema_series(line, 9)
    if not len(signal):
        return None
    return MACD(float(line[-1]), float(signal[-1]), float(line[-1] - signal[-1]))


def bollinger(closes, period: int = 20, num_std: float = 2.0) -> Optional[Bollinger]:
    closes = np.asarray(closes, dtype=float)
    if len(closes) < period:
        return None
    window = closes[-period:]
    sma = float(np.mean(window))
    sd = float(np.std(window))
    upper, lower = sma + num_std * sd, sma - num_std * sd
    bandwidth = (upper - lower) / sma * 100 if sma else 0.0
    return Bollinger(upper, sma, lower, bandwidth)


def _true_range(candles: Sequence[Candle]) -> np.ndarray:
    high = np.array([c.high for c in candles], dtype=float)
    low = np.array([c.low for c in candles], dtype=float)
    close = _closes(candles)
    return np.maximum(
        high[1:] - low[1:],
        np.maximum(np.abs(high[1:] - close[:-1]), np.abs(low[1:] - close[:-1])),
    )


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    if len(candles) < period + 1:
        return None
    tr = _true_range(candles)
    value = float(np.mean(tr[:period]))
    for x in tr[period:]:
        value = (value * (period - 1) + x) / period
    return float(value)


def stoch_rsi(closes, rsi_period: int = 14, stoch_period: int = 14,
              k_smooth: int = 3, d_smooth: int = 3) -> Optional[StochRSI]:
    series = rsi_series(closes, rsi_period)
    if len(series) < stoch_period:
        return None
    raw_k = []
    for i in range(stoch_period - 1, len(series)):
        window = series[i - stoch_period + 1:i + 1]
        lo, hi = window.min(), window.max()
        raw_k.append(50.0 if hi == lo else (series[i] - lo) / (hi - lo) * 100)
    if len(raw_k) < k_smooth:
        return None
    k = np.convolve(raw_k, np.ones(k_smooth) / k_smooth, mode="valid")
    if len(k) < d_smooth:
        return None
    d = np.convolve(k, np.ones(d_smooth) / d_smooth, mode="valid")
    return StochRSI(float(k[-1]), float(d[-1]))


def adx(candles: Sequence[Candle], period: int = 14) -> Optional[ADX]:
    """Wilder ADX with the last +DI / -DI."""
    if len(candles) < period * 2 + 1:
        return None
    high = np.array([c.high for c in candles], dtype=float)
    low = np.array([c.low for c in candles], dtype=float)
    up = high[1:] - high[:-1]
    down = low[:-1] - low[1:]
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    tr = _true_range(candles)

    s_tr, s_plus, s_minus = tr[:period].sum(), plus_dm[:period].sum(), minus_dm[:period].sum()
    dx, plus_di, minus_di = [], 0.0, 0.0
    for i in range(period, len(tr)):
        s_tr = s_tr - s_tr / period + tr[i]
        s_plus = s_plus - s_plus / period + plus_dm[i]
        s_minus = s_minus - s_minus / period + minus_dm[i]
        plus_di = s_plus / s_tr * 100 if s_tr > 0 else 0.0
        minus_di = s_minus / s_tr * 100 if s_tr > 0 else 0.0
        di_sum = plus_di + minus_di
        dx.append(abs(plus_di - minus_di) / di_sum * 100 if di_sum > 0 else 0.0)
    if len(dx) < period:
        return None
    value = float(np.mean(dx[:period]))
    for x in dx[period:]:
        value = (value * (period - 1) + x) / period
    return ADX(value, float(plus_di), float(minus_di))


def calculate_all(candles: Sequence[Candle]) -> Indicators:
    if len(candles) < MIN_CANDLES:
        return Indicators(candles=len(candles))
    closes = _closes(candles)
    ind = Indicators(
        ready=True,
        candles=len(candles),
        ema9=ema(closes, 9),
        ema21=ema(closes, 21),
        ema50=ema(closes, 50),
        rsi=rsi(closes, 14),
        macd=macd(closes),
        bollinger=bollinger(closes, 20, 2),
        atr=atr(candles, 14),
        stoch_rsi=stoch_rsi(closes),
        adx=adx(candles, 14),
    )
    if len(closes) >= 22:
        ind.prev_ema9 = ema(closes[:-1], 9)
        ind.prev_ema21 = ema(closes[:-1], 21)
    return ind


# ── Support / resistance ──

def _strength(touches: int, span_minutes: float) -> str:
    if touches >= 3 and span_minutes >= 60:
        return "STRONG"
    if touches >= 2 and span_minutes >= 30:
        return "STRONG"
    if touches >= 2 and span_minutes >= 10:
        return "MODERATE"
    if touches >= 2:
        return "WEAK"
    return "MODERATE" if span_minutes >= 60 else "WEAK"


def find_support_resistance(prices: Sequence[float], times: Sequence[float],
                            current_price: float) -> SupportResistance:
    """Cluster strict swing highs/lows into levels around ``current_price``."""
    if len(prices) < SR_MIN_PRICES or current_price <= 0:
        return SupportResistance()
    p = np.asarray(prices, dtype=float)
    w = SR_SWING_WINDOW
    highs: list[tuple[float, float]] = []
    lows: list[tuple[float, float]] = []
    for i in range(w, len(p) - w):
        neighbours = np.concatenate((p[i - w:i], p[i + 1:i + w + 1]))
        if (neighbours < p[i]).all():
            highs.append((float(p[i]), float(times[i])))
        if (neighbours > p[i]).all():
            lows.append((float(p[i]), float(times[i])))
    swings = highs + lows

    threshold = current_price * SR_CLUSTER_PCT
    used: set[int] = set()
    levels = []
    for i, (price, _) in enumerate(swings):
        if i in used:
            continue
        members = [swings[i]]
        used.add(i)
        for j in range(i + 1, len(swings)):
            if j not in used and abs(swings[j][0] - price) <= threshold:
                members.append(swings[j])
                used.add(j)
        avg = sum(m[0] for m in members) / len(members)
        stamps = [m[1] for m in members]
        span = (max(stamps) - min(stamps)) / 60
        levels.append(Level(avg, len(members), _strength(len(members), span), round(span),
                            (avg - current_price) / current_price * 100))

    supports = sorted((lv for lv in levels if lv.price < current_price), key=lambda lv: -lv.price)
    resistances = sorted((lv for lv in levels if lv.price > current_price), key=lambda lv: lv.price)
    return SupportResistance(supports[:SR_MAX_LEVELS], resistances[:SR_MAX_LEVELS])


# ── Candle patterns ──

def analyze_candle_patterns(candles: Sequence[Candle]) -> PatternAnalysis:
    if len(candles) < PATTERN_CANDLES:
        return PatternAnalysis()
    recent = list(candles[-PATTERN_CANDLES:])
    found: list[CandlePattern] = []
    for i, c in enumerate(recent):
        rng = c.high - c.low
        if rng == 0:
            continue
        n = i + 1
        body = abs(c.close - c.open)
        upper = (c.high - max(c.open, c.close)) / rng
        lower = (min(c.open, c.close) - c.low) / rng
        body_ratio = body / rng
        bullish = c.close > c.open

        if body_ratio < 0.1:
            found.append(CandlePattern(n, "DOJI", "INDECISION", "tiny body, market undecided"))
        if upper > 0.6 and body_ratio < 0.3:
            found.append(CandlePattern(n, "SHOOTING_STAR", "BEARISH_REVERSAL",
                                       "long upper wick rejection, sellers pushing down"))
        if lower > 0.6 and body_ratio < 0.3:
            found.append(CandlePattern(n, "HAMMER", "BULLISH_REVERSAL",
                                       "long lower wick defense, buyers pushing up"))
        if upper > 0.4 and body > 0:
            found.append(CandlePattern(n, "UPPER_WICK_REJECTION", "BEARISH",
                                       f"upper wick {upper * 100:.0f}% of range"))
        if lower > 0.4 and body > 0:
            found.append(CandlePattern(n, "LOWER_WICK_DEFENSE", "BULLISH",
                                       f"lower wick {lower * 100:.0f}% of range"))
        if i > 0:
            prev = recent[i - 1]
            prev_bullish = prev.close > prev.open
            prev_body = abs(prev.close - prev.open)
            if (bullish and not prev_bullish and body > prev_body * 1.2
                    and c.close > prev.open and c.open < prev.close):
                found.append(CandlePattern(n, "BULLISH_ENGULFING", "BULLISH_REVERSAL",
                                           "bullish candle engulfs previous bearish"))
            if (not bullish and prev_bullish and body > prev_body * 1.2
                    and c.open > prev.close and c.close < prev.open):
                found.append(CandlePattern(n, "BEARISH_ENGULFING", "BEARISH_REVERSAL",
                                           "bearish candle engulfs previous bullish"))

    if not found:
        return PatternAnalysis([], "No significant patterns")
    bull = sum("BULLISH" in p.signal for p in found)
    bear = sum("BEARISH" in p.signal for p in found)
    if bull > bear:
        summary = f"Bullish bias ({bull} bullish vs {bear} bearish patterns)"
    elif bear > bull:
        summary = f"Bearish bias ({bear} bearish vs {bull} bullish patterns)"
    else:
        summary = f"Mixed signals ({bull} bullish, {bear} bearish patterns)"
    return PatternAnalysis(found, summary)


# ── Context ──

def technical_context(prices: Sequence[float], times: Sequence[float],
                      current_price: float) -> TechnicalContext:
    """Candles, indicators, levels and patterns from one market's samples."""
    ctx = TechnicalContext(recent_prices=[float(p) for p in list(prices)[-RECENT_PRICES:]])
    for label, seconds in CANDLE_FRAMES:
        ctx.frames.append((label, calculate_all(build_candles(prices, times, seconds))))
    ctx.levels = find_support_resistance(prices, times, current_price)
    ctx.patterns = analyze_candle_patterns(build_candles(prices, times, PATTERN_FRAME[1]))
    log.debug("[IND] %d samples -> %s", len(prices),
              ", ".join(f"{label} {ind.available}/{INDICATORS_TOTAL}" for label, ind in ctx.frames))
    return ctx


# ── Prompt text ──

def _zone(value: float, high: float, low: float) -> str:
    if value > high:
        return "OVERBOUGHT"
    if value < low:
        return "OVERSOLD"
    return "NEUTRAL"


def format_indicators(ind: Indicators, label: str) -> list[str]:
    if not ind.ready:
        return [f"{label} INDICATORS: Still building data..."]
    lines = [f"{label} INDICATORS ({ind.available}/{INDICATORS_TOTAL} available):"]
    if ind.rsi is not None:
        lines.append(f"  RSI(14): {ind.rsi:.1f} [{_zone(ind.rsi, 70, 30)}]")
    if ind.ema9 is not None and ind.ema21 is not None:
        cross = "BULLISH" if ind.ema9 > ind.ema21 else "BEARISH"
        lines.append(f"  EMA 9/21: {ind.ema9:.4f} / {ind.ema21:.4f} [{cross}]")
    if ind.ema50 is not None:
        lines.append(f"  EMA 50: {ind.ema50:.4f}")
    if ind.macd:
        m = ind.macd
        momentum = "BULLISH" if m.histogram > 0 else "BEARISH"
        weak = " WEAK" if abs(m.histogram) < 0.01 else ""
        lines.append(f"  MACD: {m.macd:.4f} | Signal: {m.signal:.4f} | Hist: {m.histogram:.4f} "
                     f"[{momentum}{weak}]")
    if ind.bollinger:
        b = ind.bollinger
        ref = ind.ema9 if ind.ema9 is not None else b.middle
        width = b.upper - b.lower
        position = (ref - b.lower) / width * 100 if width > 0 else 50.0
        lines.append(f"  Bollinger: Upper {b.upper:.4f} | Mid {b.middle:.4f} | Lower {b.lower:.4f} "
                     f"| Price at {position:.0f}% [BW: {b.bandwidth:.2f}%]")
    if ind.atr is not None:
        lines.append(f"  ATR(14): {ind.atr:.4f}")
    if ind.stoch_rsi:
        s = ind.stoch_rsi
        lines.append(f"  StochRSI: K={s.k:.1f} D={s.d:.1f} [{_zone(s.k, 80, 20)}]")
    if ind.adx:
        a = ind.adx
        if a.adx > 40:
            strength = "VERY STRONG TREND"
        elif a.adx > 25:
            strength = "STRONG TREND"
        elif a.adx > 20:
            strength = "WEAK TREND"
        else:
            strength = "NO TREND/CHOPPY"
        side = "BULLISH" if a.plus_di > a.minus_di else "BEARISH"
        lines.append(f"  ADX: {a.adx:.1f} [{strength}] | +DI: {a.plus_di:.1f} "
                     f"-DI: {a.minus_di:.1f} [{side}]")
    return lines


def _level_line(kind: str, lv: Level, side: str) -> str:
    span = f", tested over {lv.span_minutes}min" if lv.span_minutes else ""
    return (f"  {kind}: ${lv.price:,.4f} [{lv.strength}, {lv.touches} touches{span}] "
            f"{abs(lv.distance_pct):.2f}% {side}")


def format_support_resistance(sr: SupportResistance) -> list[str]:
    lines = ["SUPPORT/RESISTANCE LEVELS:"]
    lines += [_level_line("RESISTANCE", lv, "above") for lv in sr.resistances] \
        or ["  RESISTANCE: None detected nearby"]
    lines += [_level_line("SUPPORT", lv, "below") for lv in sr.supports] \
        or ["  SUPPORT: None detected nearby"]
    return lines


def format_candle_patterns(analysis: PatternAnalysis, label: str = PATTERN_FRAME[0]) -> list[str]:
    if not analysis.patterns:
        return [f"CANDLE PATTERNS ({label}): No significant patterns"]
    lines = [f"CANDLE PATTERNS ({label}): {analysis.summary}"]
    for p in analysis.patterns[-PATTERN_CANDLES:]:
        lines.append(f"  Candle {p.candle}: {p.type} [{p.signal}] - {p.desc}")
    return lines


def format_context(ctx: TechnicalContext) -> list[str]:
    lines = []
    if ctx.recent_prices:
        lines.append("Recent prices (oldest to newest): "
                     + ", ".join(f"${p:,.4f}" for p in ctx.recent_prices))
    for label, ind in ctx.frames:
        lines.append("")
        lines += format_indicators(ind, label)
    lines.append("")
    lines += format_support_resistance(ctx.levels)
    lines += format_candle_patterns(ctx.patterns)
    return lines
