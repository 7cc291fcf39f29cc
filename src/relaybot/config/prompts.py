CHAT_SYSTEM_PROMPT = """You are RelayBot, {user_name}'s AI friend, not an assistant.
Respond in human-like language and be as precise or detailed as your judgement says the question needs."""

TIME_RESOLUTION_PROMPT = """Calculate target datetime and extract clean task. Return JSON format:

{{
  "task": "cleaned task description",
  "targetDateTime": "ISO datetime string or null",
  "priority": "HIGH|MEDIUM|LOW"
}}

Rules:
- Current local time: {now_local} ({timezone})
- Extract clean task from the original text, removing time references
- Calculate targetDateTime in the LOCAL timezone above, not UTC
- If no valid time is found, set targetDateTime to null
- Priority: HIGH for urgent/soon, MEDIUM for normal, LOW for far future
- Examples: "tomorrow 3pm" -> tomorrow at 15:00 local time, "10am" -> today/tomorrow 10:00 local time

Task: "{task}"
Original text: "{expression}"

Return only valid JSON:"""

CATEGORIZE_PROMPT = """Analyze this message and categorize it. Return JSON format:

{{
  "type": "{type_choices}",
  "priority": "HIGH|MEDIUM|LOW",
  "content": "briefly summarised extracted content, easy to read in a chat app",
  "datetime": "exact date/time as mentioned in the message, null if none"
}}

Rules:
{category_rules}
- NONE: nothing worth keeping
- HIGH priority: urgent, time-sensitive, emergency
- MEDIUM priority: important but not urgent
- LOW priority: general info
- For datetime: extract EXACTLY as written (e.g. "tomorrow at 3pm", "21st September 2025", "10am")

Message: "{message}"

Return only valid JSON:"""

CATEGORY_RULES = {
    "REMINDER": "- REMINDER: contains time/date references, tasks to do",
    "MEMORY": "- MEMORY: personal info, preferences, facts to remember",
    "IMPORTANT": "- IMPORTANT: urgent info, updates, news",
    "SCHEDULE": "- SCHEDULE: meetings, appointments and events with a fixed time slot",
}

INTERPRET_COMMAND_PROMPT = """Analyze this user command and return ONLY one of these exact actions if it matches, otherwise return "NONE":

Actions:
{actions}

User command: "{command}"

Return only the action name or "NONE":"""

__all__ = [
    "CHAT_SYSTEM_PROMPT",
    "TIME_RESOLUTION_PROMPT",
    "CATEGORIZE_PROMPT",
    "CATEGORY_RULES",
    "INTERPRET_COMMAND_PROMPT",
]
