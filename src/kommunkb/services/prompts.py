"""Prompt text for the knowledge-base chat."""

from __future__ import annotations

from kommunkb.models import ArticleContext, flatten_rich_text

NO_SOURCES_MESSAGE = (
    "Välj minst en kunskapskälla (en avdelning eller en extern källa) i menyn, "
    "så söker jag efter ett svar åt dig."
)

GENERIC_FAILURE_MESSAGE = (
    "Tyvärr kunde jag inte generera ett svar just nu. "
    "Försök att formulera om frågan eller försök igen om en stund."
)

EMPTY_RESPONSE_NUDGE = (
    "Your previous reply was empty. Answer the user's last question now. "
    "Use searchKnowledge if you need information from the knowledge base."
)

FORCE_ANSWER_INSTRUCTION = (
    "You have used all available searches. Do not search again. "
    "Write your final answer now using only the search results above. "
    "If they do not contain the answer, say so briefly in the user's language."
)

EXTERNAL_BALANCE_NOTE = (
    "Note: Do not favor external sources just because they are longer or more detailed. "
    "Internal documents describe how this organisation actually works; weigh them at least equally."
)

_CITATION_RULES = """CITATION RULES (mandatory):
- Cite sources inline as markdown links: [Title](URL).
- Use ONLY URLs copied verbatim from the "Article URL" lines of search results.
- NEVER invent, shorten or modify a URL. If a result has no URL, cite it by title only.

SEARCH RULES:
- If the first search does not yield anything useful, you may retry ONCE with a rephrased query
  (synonyms, broader or narrower terms, Swedish instead of English or vice versa).
- You have at most {max_turns} searches per question. After that, answer with what you found."""


def _source_context(has_external: bool) -> str:
    if not has_external:
        return ""
    return (
        "\nYou have access to both internal documents and external sources. "
        "Always state which source a piece of information comes from.\n"
    )


def build_system_instruction(
    *,
    article_context: ArticleContext | None,
    has_external_sources: bool,
    max_turns: int,
) -> str:
    """System instruction for the search phase, article-scoped or general."""

    rules = _CITATION_RULES.format(max_turns=max_turns)
    if article_context is not None:
        summary = f"Article summary: {article_context.summary}\n" if article_context.summary else ""
        return (
            "You are a helpful AI assistant discussing a specific article from the Swedish municipal "
            "knowledge base.\n\n"
            f'You are currently discussing the article titled: "{article_context.title}"\n'
            f"{summary}\n"
            "Focus primarily on this article's content. Use the searchKnowledge function when the user "
            "asks about something the article does not cover, wants related articles, or you need more "
            "context. Explain how any articles you find relate to the current one.\n"
            f"{_source_context(has_external_sources)}\n"
            f"{rules}\n\n"
            "Answer in the same language as the user's question (Swedish or English). "
            "Use clear, structured markdown."
        )
    return (
        "You are a helpful AI assistant with access to a knowledge base of Swedish municipal documents.\n\n"
        "Use the searchKnowledge function to find relevant information before answering questions "
        "about the organisation, its policies, routines or documents. Guide the user to the specific "
        "articles that answer their question and explain what they will find in each.\n"
        f"{_source_context(has_external_sources)}\n"
        f"{rules}\n\n"
        "Answer in the same language as the user's question (Swedish or English). "
        "Use clear, structured markdown."
    )


GROUNDING_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant for a Swedish municipality. Use Google Search to find current, "
    "reliable public information. Answer in the same language as the user's question and use clear "
    "markdown. Do not add citation markers to the text; sources are shown separately."
)


def build_grounding_prompt(message: str, knowledge_base_answer: str | None) -> str:
    if not knowledge_base_answer:
        return message
    return (
        f"User question: {message}\n\n"
        "An answer based on the organisation's internal knowledge base already exists:\n"
        "--- EXISTING ANSWER ---\n"
        f"{knowledge_base_answer}\n"
        "--- END EXISTING ANSWER ---\n\n"
        "Use web search to check whether current public information adds real value. If it does, "
        "return an enhanced answer that keeps every link from the existing answer. If it does not, "
        "return the existing answer unchanged."
    )


def build_article_block(article_context: ArticleContext, max_chars: int) -> str:
    if article_context.content is None:
        return ""
    content = flatten_rich_text(article_context.content)
    summary = f"Summary: {article_context.summary}\n" if article_context.summary else ""
    return (
        "--- ARTICLE CONTENT ---\n"
        f"Title: {article_context.title}\n"
        f"{summary}"
        f"Content:\n{content[:max_chars]}\n"
        "--- END ARTICLE CONTENT ---"
    )


def build_results_block(
    search_number: int,
    query: str,
    formatted: str,
    *,
    internal_count: int,
    external_count: int,
) -> str:
    lines = [
        f'[Search {search_number}] I searched with query "{query}" and found '
        f"{internal_count + external_count} results "
        f"({internal_count} internal, {external_count} external).",
    ]
    if external_count:
        lines.append(EXTERNAL_BALANCE_NOTE)
    lines.append("")
    lines.append(formatted)
    return "\n".join(lines)


def build_search_error_block(search_number: int, query: str, detail: str) -> str:
    return (
        f'[Search Error] Search {search_number} with query "{query}" {detail}. '
        "Try a different query or answer from the information you already have."
    )
