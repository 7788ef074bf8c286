"""Prompt text for episode summarization."""

DEFAULT_SYSTEM_PROMPT = """You are a podcast summarizer. Given a transcript of a podcast episode, produce a structured summary with the following sections:

TOPICS: The main topics discussed (short noun phrases)

SUMMARY: A concise narrative summary (2-3 paragraphs)

KEY TAKEAWAYS: The most important insights and conclusions

NOTABLE QUOTES: Direct quotes with approximate timestamps if available

Be concise but comprehensive. Focus on actionable insights and key information.
Only quote what is actually said in the transcript."""

FORMAT_SUFFIX = """

Output MUST follow this schema:
{format_instructions}
"""

FULL_USER_PROMPT = "Episode: {title}\n\nHere is the podcast transcript to summarize:\n\n{text}\n"

WINDOW_USER_PROMPT = (
    "Episode: {title}\n\n"
    "This is part {part} of {parts} of a long transcript. Parts overlap slightly at their edges. "
    "Summarize only this part; do not guess what other parts contain.\n\n"
    "Transcript part:\n\n{text}\n"
)

REDUCE_USER_PROMPT = (
    "Episode: {title}\n\n"
    "Below are summaries of the {parts} consecutive parts of one episode transcript, in order. "
    "Merge them into a single summary of the whole episode: deduplicate topics and takeaways "
    "repeated across parts, keep the strongest quotes, and write one overview covering the whole episode. "
    "Lines of the form [gap: ...] mark parts that could not be summarized; do not invent their content.\n\n"
    "{text}\n"
)
