from __future__ import annotations
"""
Telemetry analysis (Responses API) for a single device.

Env (via settings):
  OPENAI_API_KEY=...                # without it a local Markdown summary is returned
  OPENAI_MODEL=gpt-4o-mini
  INSIGHTS_CACHE_TTL=120            # seconds

Input bundle:
  {"current_telemetry": {...}, "recent_history": [last 10 {time, value}]}

Return:
  analyze_device(device) -> str (free text)
  raises AnalysisError when the model call fails; callers show their own message.
"""

import hashlib, json, logging, math, time
from threading import Lock
from typing import Any, Dict, List

from openai import OpenAI, OpenAIError

from .models import Device
from .settings import settings

log = logging.getLogger("ai")

RECENT_HISTORY_FOR_ANALYSIS = 10
ANALYSIS_ERROR_MESSAGE = "An error occurred while analyzing the telemetry data. Please try again later."

class AnalysisError(RuntimeError):
    pass

# ---------------- cache ----------------
_CACHE: Dict[str, tuple[float, str]] = {}
_CACHE_LOCK = Lock()

def _cache_get(k: str) -> str | None:
    now = time.time()
    with _CACHE_LOCK:
        it = _CACHE.get(k)
        if not it: return None
        exp, val = it
        if now <= exp: return val
        _CACHE.pop(k, None); return None

def _cache_set(k: str, v: str, ttl: int) -> None:
    if ttl <= 0: return
    with _CACHE_LOCK:
        _CACHE[k] = (time.time() + ttl, v)

def clear_cache() -> None:
    with _CACHE_LOCK:
        _CACHE.clear()

# ---------------- utils ----------------
def _is_num(x: Any) -> bool: return isinstance(x, (int, float)) and not isinstance(x, bool) and not math.isnan(x)

def _numeric_stats(vals: List[float]) -> Dict[str, Any]:
    n = len(vals)
    if n == 0: return {"count": 0}
    mean = sum(vals)/n
    slope = 0.0
    if n >= 2:
        num = sum((i-(n-1)/2)*(v-mean) for i,v in enumerate(vals))
        den = sum((i-(n-1)/2)**2 for i in range(n)) or 1.0
        slope = num/den
    return {"count": n, "min": min(vals), "max": max(vals), "mean": mean, "slope": slope}

def build_bundle(device: Device) -> Dict[str, Any]:
    history = list(device.telemetry_history or [])
    return {
        "current_telemetry": dict(device.telemetry or {}),
        "recent_history": history[-RECENT_HISTORY_FOR_ANALYSIS:],
    }

def _fallback_markdown(device: Device, bundle: Dict[str, Any]) -> str:
    current = bundle["current_telemetry"]
    vals = [float(e["value"]) for e in bundle["recent_history"] if _is_num(e.get("value"))]
    s = _numeric_stats(vals)
    parts = [
        "## Summary",
        f"Device `{device.name}` ({device.widget_type}) reported {len(vals)} recent reading(s).",
        "",
        "## Current Values",
    ]
    for k in sorted(current):
        if k != "timestamp":
            parts.append(f"- **{k}**: {current[k]}")
    parts += ["", "## Trend"]
    if s["count"] >= 3:
        trend = "rising" if s["slope"] > 0.01 else "falling" if s["slope"] < -0.01 else "flat"
        parts.append(f"- min {s['min']:.2f}, max {s['max']:.2f}, mean {s['mean']:.2f}, trend {trend}.")
    else:
        parts.append("- Not enough history to judge a trend.")
    parts += [
        "",
        "## Note",
        "AI analysis is not configured (OPENAI_API_KEY missing); this is a local summary.",
    ]
    return "\n".join(parts)

# ---------------- prompt ----------------
def build_prompt(telemetry_data: str) -> str:
    return (
        "You are an expert in analyzing telemetry data from IoT devices.\n\n"
        "You will receive telemetry data in JSON format. Your task is to analyze this data "
        "and identify any anomalies or potential issues with the devices.\n\n"
        "Provide a detailed analysis of the telemetry data, highlighting any anomalies, "
        "potential device issues, and their possible causes.\n\n"
        f"Telemetry Data: {telemetry_data}"
    )

def _output_text(resp: Any) -> str:
    text = getattr(resp, "output_text", None) or ""
    if text:
        return text
    parts: List[str] = []
    for b in getattr(resp, "output", None) or []:
        for c in getattr(b, "content", None) or []:
            if getattr(c, "type", None) == "output_text":
                parts.append(getattr(c, "text", "") or "")
    return "\n".join(parts).strip()

# ---------------- public entry ----------------
def analyze_telemetry(telemetry_data: str) -> str:
    """Send one JSON bundle to the model and return its free-text analysis."""
    key = "ax::v1::" + hashlib.sha256(telemetry_data.encode("utf-8")).hexdigest()
    cached = _cache_get(key)
    if cached:
        return cached

    client = OpenAI(api_key=settings.openai_api_key, max_retries=0)
    try:
        resp = client.responses.create(model=settings.openai_model, input=build_prompt(telemetry_data))
    except OpenAIError as e:
        log.warning("[AI] model call failed: %s", e.__class__.__name__)
        raise AnalysisError(str(e)) from e

    text = _output_text(resp)
    if not text:
        raise AnalysisError("empty analysis")
    _cache_set(key, text, settings.insights_cache_ttl)
    return text

def analyze_device(device: Device) -> str:
    bundle = build_bundle(device)
    if not settings.openai_api_key:
        return _fallback_markdown(device, bundle)
    return analyze_telemetry(json.dumps(bundle, indent=2, ensure_ascii=False))
