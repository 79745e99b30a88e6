"""
Converts rendered page markup into markdown for storage and downstream indexing.
"""

import re
import logging
from typing import Iterable

from bs4 import BeautifulSoup, Comment
from markdownify import markdownify


# Elements that carry no readable content
IGNORED_TAGS = ('script', 'style', 'noscript', 'svg', 'path')


class ContentParser:
    """
    Normalizes the inner HTML of a page body into markdown text.
    """

    def __init__(self, ignored_tags: Iterable[str] = IGNORED_TAGS):
        self.ignored_tags = list(ignored_tags)
        self.logger = logging.getLogger(__name__)

        self.blank_lines_pattern = re.compile(r'\n{3,}')
        self.trailing_space_pattern = re.compile(r'[ \t]+\n')

    def to_markdown(self, html_content: str) -> str:
        """
        Convert HTML to markdown.

        Args:
            html_content: Inner HTML of the document body

        Returns:
            Markdown text, empty when the page has no readable content
        """
        if not html_content or not html_content.strip():
            return ""

        soup = BeautifulSoup(html_content, 'lxml')

        for element in soup(self.ignored_tags):
            # Nested matches go with their ignored parent
            if not element.decomposed:
                element.decompose()

        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        markdown = markdownify(str(soup), heading_style='ATX', bullets='-')
        return self._clean_markdown(markdown)

    def _clean_markdown(self, text: str) -> str:
        """Trim trailing spaces and collapse runs of blank lines."""
        text = self.trailing_space_pattern.sub('\n', text)
        text = self.blank_lines_pattern.sub('\n\n', text)
        return text.strip()
