"""JSON Schema definitions for Ollama structured outputs.

Used via Ollama's `format: { JSON Schema }` parameter.
"""

# ═══════════════════════════════════════════════════
# DISCREPANCY JUDGE
# ═══════════════════════════════════════════════════

_EVALUATED_DISCREPANCY_SCHEMA = {
    "type": "object",
    "properties": {
        "field": {"type": "string"},
        "values": {
            "type": "array",
            "items": {"type": "string"},
        },
        "is_genuine_discrepancy": {"type": "boolean"},
        "explanation": {"type": "string", "maxLength": 600},
    },
    "required": ["field", "values", "is_genuine_discrepancy", "explanation"],
}

JUDGE_SCHEMA = {
    "type": "object",
    "properties": {
        "evaluated_discrepancies": {
            "type": "array",
            "items": _EVALUATED_DISCREPANCY_SCHEMA,
        },
    },
    "required": ["evaluated_discrepancies"],
}
