"""Interactive UI components for the command line."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Category

logger = logging.getLogger(__name__)


class CategoryCompleter(Completer):
    """Fuzzy search completer for expense categories."""

    def __init__(self, categories: list[Category]):
        """Initialize the completer with available categories."""
        self.categories = categories
        self.name_to_category = {cat.value: cat for cat in categories}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for cat in self.categories:
            if not query:
                yield Completion(text=cat.value, start_position=0, display=cat.value)
            elif fuzzy_match(query, cat.value.lower()):
                yield Completion(
                    text=cat.value,
                    start_position=-len(document.text),
                    display=cat.value,
                )


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="gro" matches "Groceries"
        query="dn" matches "Date Night"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


def select_category_interactive(
    categories: list[Category],
    expense_description: str,
) -> Category | None:
    """
    Interactive category selection with fuzzy search.

    Args:
        categories: Available categories
        expense_description: Description of the expense being categorized

    Returns:
        Selected category, or None to skip
    """
    print(f"\nCategorize: {expense_description or '(no description)'}")
    print("   Type to search, press Enter to confirm, Ctrl+C to skip\n")

    completer = CategoryCompleter(categories)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt("Category: ", complete_while_typing=True)

            if not result:
                return None

            category = completer.name_to_category.get(result)
            if category:
                logger.info(f"User selected category: {category.value}")
                return category

            print("Invalid category. Please select from the list or press Tab to complete.")

    except KeyboardInterrupt:
        print("\nSkipped")
        return None
    except EOFError:
        return None


def confirm(question: str) -> bool:
    """Simple yes/no confirmation, defaulting to yes."""
    try:
        response = input(f"{question} [Y/n] ").strip().lower()
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled")
        return False
    return response in ("", "y", "yes")
