# mentor/core/prompts.py
#
# Instruction texts sent to the models. Kept in one place so wording changes
# never touch control flow.

# Marker of the summary pseudo-turn injected ahead of the history. Assistant
# entries starting with it are dropped from incoming history.
SUMMARY_PREFIX = "[Summary so far]"

GENERAL_SUPPORT_PROMPT = (
    "You are an AI assistant dedicated to learning support.\n"
    "Role: new-business and study support. "
    "Style: friendly, rich in concrete examples, step by step, actionable."
)

DEFAULT_SYSTEM_PROMPT = "Answer politely and appropriately."

SHRINK_INSTRUCTION = (
    "Shorten the following user message to at most 500 characters while keeping its key points. "
    "Keep every proper noun, head count, monetary amount and date."
)

SUMMARIZE_INSTRUCTION = "\n".join(
    [
        "You summarize a whole conversation as compactly as possible.",
        "Merge [Previous summary], [Recent turns] and [This turn] into one summary that keeps the important information.",
        "Give priority to the most recent exchanges and keep proper nouns, dates, head counts and amounts.",
        "Compress older content aggressively, but always reflect the nuance of the newest exchange.",
        "Avoid redundancy; use bullet points and short sentences to keep the information dense.",
    ]
)

COMPRESS_INSTRUCTION = (
    "Compress the following text to at most 3000 characters. "
    "Keep the important information and remove redundant parts."
)

REWRITE_INSTRUCTION = (
    "Rewrite the user's request into detailed research instructions "
    "(scope, metrics, comparisons, geographies, timeframe, preferred sources, output format). "
    "Keep language same as input."
)

RESEARCH_SYSTEM_PROMPT = "\n".join(
    [
        "You are a professional research analyst. Return a structured, citation-rich report.",
        "- Prefer authoritative & up-to-date sources.",
        "- Use headings and bullet points for readability.",
        "- Include inline citations; key claims must be traceable.",
        "- Respond in the language of the user's request.",
    ]
)

# Visible notice written before a fallback answer
FALLBACK_NOTICE = "Deep research is unavailable, answering with the search-enabled model instead.\n\n"

SOURCES_HEADING = "**Sources:**"

# Appended to the assistant text handed to the summarizer after a research answer
CITATIONS_NOTE = "[Citations attached]"
