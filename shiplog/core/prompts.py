"""
Prompt builders for the summarization service.

Every prompt asks for a JSON object whose keys match the pydantic models in
``shiplog.models.summaries``.
"""

import re
from typing import List, NamedTuple, Optional, Sequence

MAX_PROMPT_DIFF_CHARS = 8000

_VAGUE_MESSAGES = [
    re.compile(r"^fix$", re.IGNORECASE),
    re.compile(r"^update$", re.IGNORECASE),
    re.compile(r"^wip$", re.IGNORECASE),
    re.compile(r"^changes?$", re.IGNORECASE),
    re.compile(r"^stuff$", re.IGNORECASE),
    re.compile(r"^misc$", re.IGNORECASE),
    re.compile(r"^temp$", re.IGNORECASE),
    re.compile(r"^\.+$"),
    re.compile(r"^[a-z]$", re.IGNORECASE),
]


class Prompt(NamedTuple):
    system: str
    user: str


def is_vague_message(message: str) -> bool:
    first_line = message.strip().split("\n")[0]
    return any(p.match(first_line) for p in _VAGUE_MESSAGES)


def truncate_diff(diff: str, limit: int = MAX_PROMPT_DIFF_CHARS) -> tuple[str, bool]:
    """Cut a diff down to ``limit`` characters. Returns (text, was_truncated)."""
    if len(diff) <= limit:
        return diff, False
    return f"{diff[:limit]}\n\n[... diff truncated ...]", True


def build_translator_prompt(message: str, diff: str, project_context: Optional[str] = None) -> Prompt:
    context = project_context or "a software project"
    system = f"""You are a technical writer who translates git commits into structured summaries for stakeholders.

Context: You are writing updates for {context}.

Respond with a JSON object with these keys:
- "action": "include" for meaningful changes, "skip" for trivial changes
- "summary": business-value sentence (max 20 words, past tense, active voice), null when skipping
- "category": one of "feature", "fix", "improvement", "refactor", "docs", "chore"
- "significance": "high" (user-facing), "medium" (internal) or "low" (minor)

Rules:
- Focus on BUSINESS VALUE, not technical implementation
- Don't mention file names, function names, or technical jargon
- Use "skip" for: typos, formatting, whitespace, comments, import reordering

Examples:
- feature/high: "Added user authentication so customers can securely access their accounts"
- fix/high: "Fixed a bug that was causing checkout failures for some users"
- improvement/medium: "Improved page load performance by optimizing database queries"
- refactor/low: "Reorganized code for better maintainability\""""

    truncated, was_truncated = truncate_diff(diff)
    if is_vague_message(message):
        user = (
            f'Note: The commit message is vague ("{message}"), so focus primarily '
            f"on the diff to understand what changed.\n\n"
        )
    else:
        user = f"Commit message: {message}\n\n"
    user += f"Diff:\n```\n{truncated}\n```"
    if was_truncated:
        user += "\n\n(Note: The diff was truncated. Summarize based on what you can see.)"

    return Prompt(system, user)


def build_comment_analysis_prompt(pr_title: str, pr_number: int, comment_body: str) -> Prompt:
    system = """You analyze PR comments to determine if they indicate a blocker or resolve one.

A BLOCKER is something preventing the PR from being merged or work from progressing:
- External dependencies ("waiting on API from team X", "blocked by #123")
- Review concerns ("needs security review", "architecture decision needed")
- Technical issues ("CI failing", "tests broken", "need to fix X first")
- Resource blockers ("need access to prod", "waiting for credentials")
- Questions that must be answered before proceeding

A RESOLUTION is when a previously mentioned blocker is addressed:
- "Fixed", "Resolved", "Done", "Addressed"
- "No longer blocked", "Got access", "This is ready now"
- Approval or confirmation language
- Answers to blocking questions

Respond with a JSON object with these keys:
- "action": "add_blocker", "resolve_blocker" or "none"
- "description": brief blocker description (max 15 words), only for add_blocker
- "mentioned_users": GitHub usernames the comment is waiting on, without the @

Important:
- Most comments are NOT blockers (discussions, reviews, suggestions)
- Only flag clear blocking statements, not minor concerns
- When in doubt, use action "none\""""

    user = f'PR #{pr_number}: "{pr_title}"\n\nComment:\n{comment_body}'
    return Prompt(system, user)


def build_feature_narrator_prompt(
    pr_title: str,
    pr_number: int,
    translations: Sequence[str],
    project_context: Optional[str] = None,
) -> Prompt:
    context = project_context or "a software project"
    system = f"""You are a technical writer creating feature summaries for stakeholders.

Context: You are writing about {context}.

Given a PR title and list of commit translations, respond with a JSON object with these keys:
- "feature_name": human-readable headline (max 8 words, action-oriented)
- "impact": business value statement (max 20 words)

Rules:
- Feature name: "Improved X", "Added Y", "Fixed Z" format
- Impact explains WHY this matters to users/business
- No technical jargon (API, database, refactor) unless essential
- Focus on outcomes, not implementation"""

    if not translations:
        user = f'PR #{pr_number}: "{pr_title}"\n\nNo meaningful commits.'
    else:
        numbered = "\n".join(f"{i}. {t}" for i, t in enumerate(translations, start=1))
        user = f'PR #{pr_number}: "{pr_title}"\n\nCommits:\n{numbered}'

    return Prompt(system, user)


def _bullets(lines: List[str], empty: str) -> str:
    return "\n".join(f"- {line}" for line in lines) if lines else empty


def build_weekly_summary_prompt(
    shipped: Sequence[dict],
    blockers: Sequence[dict],
    resolved: Sequence[dict],
    in_progress: Sequence[dict],
    include_next_week: bool,
    project_context: Optional[str] = None,
) -> Prompt:
    """
    Prompt for the weekly stakeholder narrative.

    Args:
        shipped: dicts with ``translation`` and ``author``
        blockers: dicts with ``reason``, ``age_days``, ``author`` and ``mentioned_users``
        resolved: dicts with ``reason``
        in_progress: dicts with ``translation`` and ``author``
        include_next_week: Ask for a next-week outlook
    """
    context = project_context or "a software project"
    next_week_key = (
        '\n- "next_week": one or two sentences on what is expected next week'
        if include_next_week else ""
    )
    system = f"""You write the weekly engineering summary for stakeholders of {context}.

Respond with a JSON object with these keys:
- "executive_summary": two or three sentences on the week's outcomes
- "shipped_groups": list of {{"theme", "summary", "contributors"}} grouping shipped work by theme
- "blockers_and_risks": one or two sentences on active blockers, or null if there are none
- "help_needed": what leadership could unblock, or null if nothing{next_week_key}

Rules:
- Business value first, no technical jargon
- Never invent work that is not listed below"""

    user = "\n\n".join([
        "Shipped this week:\n" + _bullets(
            [f"{s['translation']} ({s['author']})" for s in shipped], "- nothing merged"
        ),
        "Active blockers:\n" + _bullets(
            [
                f"{b['reason']} ({b['author']}, {b['age_days']} days"
                + (f", waiting on @{', @'.join(b['mentioned_users'])}" if b.get("mentioned_users") else "")
                + ")"
                for b in blockers
            ],
            "- none",
        ),
        "Resolved blockers:\n" + _bullets([r["reason"] for r in resolved], "- none"),
        "In progress:\n" + _bullets(
            [f"{p['translation']} ({p['author']})" for p in in_progress], "- none"
        ),
    ])

    return Prompt(system, user)
