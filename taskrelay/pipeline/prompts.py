"""Planning prompt sent to the response source."""

PLAN_SCHEMA_EXAMPLE = """{
  "transaction_id": "auto-generated",
  "steps": [
    {
      "action": "ACTION_NAME",
      "params": { "key": "value" },
      "safety_check": "pending"
    }
  ]
}"""

ACTION_CATALOGUE = """Available actions:
- "open_url" with params: { "url": "https://..." }
- "click_element" with params: { "target": "Button Text or Label", "type": "text|role|label|selector", "index": 0 }
  - Use "index" (0-based) to click the Nth matching element
- "type_into" with params: { "target": "Input label or placeholder", "text": "text to type", "type": "label|placeholder|selector", "pressEnter": true/false }
- "press_key" with params: { "key": "Enter|Tab|Escape|ArrowDown|ArrowUp|Space|Backspace", "target": "optional element label" }
- "wait" with params: { "ms": 1000 }
- "scroll_to" with params: { "target": "element text", "type": "text" }
- "select_option" with params: { "target": "dropdown label or visible text", "value": "option text to select" }"""


def build_planning_prompt(user_prompt: str, max_steps: int = 10) -> str:
    """Wrap a natural-language request with the plan schema and rules."""
    return f"""{user_prompt}

IMPORTANT INSTRUCTION: From the above prompt, generate a JSON execution plan ONLY. Do not include any explanation, markdown, or additional text outside the JSON. Use this exact schema:

{PLAN_SCHEMA_EXAMPLE}

{ACTION_CATALOGUE}

RULES:
- Maximum {max_steps} steps
- Only generate browser-level actions (opening URLs, clicking, typing)
- Always start with "open_url" if a new site needs to be opened
- Use descriptive visible text for element targets, not CSS selectors
- When typing into a search bar, ALWAYS set "pressEnter": true to submit the search
- For "click Nth item", use click_element with "index": 0 for the first, 1 for the second, and so on
- NEVER use vague targets like "result"; always use text that matches real visible text, aria-label, or a known CSS selector
- Output ONLY the JSON, nothing else"""
