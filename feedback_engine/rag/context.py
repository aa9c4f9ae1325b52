"""Prompt assembly from ranked source chunks.

Excerpts are numbered in ranking order, most relevant first.
"""

from typing import Optional, Sequence

from feedback_engine.models import ScoredChunk

UNKNOWN_AUTHOR = "Unknown Author"

FEEDBACK_INSTRUCTIONS = (
    "Instructions:\n"
    "1. Analyze the student's response against the source materials\n"
    "2. Provide specific, constructive feedback that references the sources\n"
    "3. Identify areas of strength and areas for improvement\n"
    "4. Suggest specific ways to enhance the response based on the source content\n"
    "5. Use a supportive, encouraging tone\n"
    "6. Keep feedback concise but comprehensive (200-300 words)"
)


def format_source(index: int, scored: ScoredChunk) -> str:
    """Render one excerpt as a numbered 'Source N' block."""
    author = scored.author or UNKNOWN_AUTHOR
    return (
        f'Source {index}: "{scored.title}" by {author} (Page {scored.chunk.page})\n'
        f"Content: {scored.chunk.content}"
    )


def format_sources(ranked: Sequence[ScoredChunk]) -> str:
    return "\n\n".join(format_source(i, s) for i, s in enumerate(ranked, start=1))


def build_feedback_prompt(
    question: str,
    student_response: str,
    ranked: Sequence[ScoredChunk],
    context: Optional[str] = None,
) -> str:
    """Interleave the question, optional context and response with the sources."""
    context_line = f"Context: {context}\n" if context and context.strip() else ""
    return (
        "You are an expert educational assessor. Based on the provided source "
        "materials, evaluate the student's response and provide constructive "
        "feedback.\n\n"
        f"Question: {question}\n"
        f"{context_line}"
        f"Student Response: {student_response}\n\n"
        "Relevant Source Materials:\n"
        f"{format_sources(ranked)}\n\n"
        f"{FEEDBACK_INSTRUCTIONS}\n\n"
        "Feedback:"
    )


def format_skill_sources(ranked: Sequence[ScoredChunk]) -> list[str]:
    """Source blocks for prompts that gather material per skill."""
    blocks = []
    for i, s in enumerate(ranked, start=1):
        by = f" by {s.author}" if s.author else ""
        blocks.append(f"[Source {i}: {s.title}{by}]\n{s.chunk.content}\n\n---")
    return blocks


def excerpt(content: str, limit: int = 200) -> str:
    """First limit characters of content, with an ellipsis when cut."""
    if len(content) <= limit:
        return content
    return content[:limit].rstrip() + "..."
