"""
Find Canvas attachment references embedded in assignment descriptions.

Canvas' rich content editor marks links to course files with a
data-api-endpoint attribute pointing at the file's API record.
"""

from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

API_ENDPOINT_ATTR = "data-api-endpoint"


@dataclass(frozen=True)
class AttachmentLink:
    endpoint: str
    text: str


def extract_attachment_links(html: Optional[str]) -> list[AttachmentLink]:
    """Return every <a> carrying a data-api-endpoint, in document order."""
    if not html:
        return []

    soup = BeautifulSoup(html, "html.parser")
    links = []
    for anchor in soup.find_all("a"):
        endpoint = anchor.get(API_ENDPOINT_ATTR)
        if not endpoint:
            continue
        links.append(AttachmentLink(endpoint=endpoint.strip(), text=anchor.get_text().strip()))
    return links
