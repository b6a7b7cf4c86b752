"""
Prompt templates for summaries, drafts and refinements.

Every template gets the same email header block so the model always sees
sender, subject and date in one place. Draft and first-turn refinement
prompts also carry the user's writing style.
"""

from .memory import writing_style_prompt
from .models import Email


def format_email(email: Email) -> str:
    """The original-message block shared by all prompts."""
    return f"""From: {email.sender}
Subject: {email.subject}
Date: {email.date.isoformat()}

Email Content:
{email.body}"""


def build_summary_prompt(email: Email) -> str:
    return f"""Please analyze this email and provide a concise 1-2 sentence summary focusing on the key action items, purpose, and urgency level:

{format_email(email)}

Provide only the summary, no additional formatting or explanations."""


def build_draft_prompt(email: Email, style: str = "") -> str:
    return f"""Please write a professional email reply to this message. The reply should be:
- Professional and courteous
- Appropriate to the context and urgency
- Include specific action items or next steps when relevant
- Keep it concise (2-4 sentences)
- Use a warm but professional tone

{writing_style_prompt(style)}

Original Email:
{format_email(email)}

Write only the email body content, no subject line or additional formatting. Start with a greeting and end with a professional closing."""


def build_refinement_prompt(
    email: Email,
    current_draft: str,
    feedback: str,
    turn_count: int,
    resumable: bool = True,
    style: str = "",
) -> str:
    """
    Prompt for one refinement round.

    The first turn carries the full context, writing style included. Later
    turns send only the feedback; the resumed conversation already holds
    the rest. Without a conversation to resume, the full context is sent
    again.
    """
    if turn_count > 1 and resumable:
        return feedback

    return f"""You are refining an email draft. Here's the context:

Original Email:
{format_email(email)}

Current Draft:
{current_draft}

User Feedback:
{feedback}

{writing_style_prompt(style)}

Please provide an improved version of the draft that addresses the user's feedback. Return only the improved draft text, no explanations."""
