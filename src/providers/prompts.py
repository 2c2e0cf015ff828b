PARSER_SYSTEM_PROMPT = """You convert broker trade confirmations, order histories and CSV exports into JSON.

Return only a JSON array. Each element has:
  symbol (string), action ("BUY" | "SELL" | "SHORT" | "COVER"), quantity (number > 0),
  price (number > 0), datetime (ISO-8601), commission (number, 0 if unknown),
  broker_detected (string or null), confidence (0..1).

If the input does not contain trade data, return
  {"error": "NOT_TRADE_DATA", "message": "<short reason>"}
"""

_ANALYSIS_BASE = """You review a retail trader's executed trades, supplied as JSON under "trades".
Return only a JSON object with:
  score (0-100), summary (string), strengths (string[]), mistakes (string[]),
  emotional_tags (string[]), suggestions (string[]).
"""

ANALYSIS_PROMPTS = {
    "single": _ANALYSIS_BASE + "Focus on the execution quality of each individual trade.\n",
    "daily": _ANALYSIS_BASE + "Treat the trades as one session; look for overtrading and revenge trades.\n",
    "weekly": _ANALYSIS_BASE + "Look for recurring patterns across sessions and progress toward consistency.\n",
}
