"""
Prompts for memory extraction and conversation summaries.
"""

from typing import Iterable, Tuple

EXTRACTION_SYSTEM_PROMPT = """
You extract durable facts about the USER from a conversation so a companion can remember them later.

Guidelines:
- Record facts about the user only, never general knowledge or the topic being discussed
- One short, specific fact per entry
- Only what the user said outright or clearly implied; do not guess
- When in doubt, leave it out

Memory types:
- identity: name, occupation, location, employer, role
- preference: likes, dislikes, favoured tools or ways of working
- skill: technologies and languages the user knows or is learning
- project: things the user is working on or building
- person: people or pets the user mentions (colleagues, family, friends)
- event: things that recently happened or are about to happen to the user
- opinion: the user's views and stances

Scores:
- confidence (0.0-1.0): 1.0 when stated directly, 0.7-0.9 when strongly implied, 0.5-0.7 when inferred from context. Below 0.5, skip the fact.
- importance (0.0-1.0): 1.0 for core identity, 0.7-0.9 for main skills and active projects, 0.5-0.7 for preferences and opinions, 0.3-0.5 for one-off details.

Never record passwords, API keys, tokens, secrets, card or bank numbers, government ID numbers, health details or anything resembling a credential.

Respond with a JSON array only. Use [] when there is nothing new worth remembering:
```json
[
  {
    "type": "skill",
    "content": "User works with React and TypeScript",
    "context": "Uses them at work",
    "confidence": 0.9,
    "importance": 0.8
  }
]
```"""

SUMMARY_SYSTEM_PROMPT = """
You summarize a finished conversation between a user and their companion.

Write a short summary (at most {max_length} characters) of what was discussed and any outcome, and list up to {max_topics} key topics as short noun phrases.

Respond with a JSON object only:
```json
{{
  "summary": "...",
  "keyTopics": ["...", "..."]
}}
```"""


def format_transcript(messages: Iterable[Tuple[str, str]]) -> str:
    return '\n\n'.join(f'{role.upper()}: {content}' for role, content in messages)


def build_extraction_prompt(messages: Iterable[Tuple[str, str]], known_facts: Iterable[Tuple[str, str]]) -> str:
    """Build the extraction user prompt.

    Args:
        messages: (role, content) pairs in conversation order
        known_facts: (type, content) pairs already stored for the user

    Returns:
        Prompt listing known facts followed by the transcript
    """
    known = '\n'.join(f'- [{memory_type}] {content}' for memory_type, content in known_facts) or 'None yet'

    return f"""Find NEW facts about the user in this conversation.

ALREADY KNOWN ABOUT USER:
{known}

CONVERSATION:
{format_transcript(messages)}

Return only facts that add something to what is already known, as a JSON array. Return [] if there are none."""


def build_summary_prompt(messages: Iterable[Tuple[str, str]]) -> str:
    return f'Summarize this conversation:\n\n{format_transcript(messages)}'
