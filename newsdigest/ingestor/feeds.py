"""Feed descriptors and the YAML feed list."""
from pathlib import Path
from typing import List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, HttpUrl, model_validator

from newsdigest.core.logging import get_logger

logger = get_logger(__name__)


class HtmlSelectors(BaseModel):
    """CSS selectors that pull entries out of a live news page."""
    item: str
    title: str
    link: Optional[str] = None  # None: the item element itself carries the link
    link_attr: str = "href"
    description: Optional[str] = None
    published: Optional[str] = None
    published_attr: Optional[str] = None  # None: use the element text


class FeedDescriptor(BaseModel):
    """One configured news feed."""
    title: str
    url: HttpUrl
    kind: Literal["rss", "html"] = "rss"
    lang: Optional[str] = Field(default=None, min_length=2, max_length=8)
    active: bool = True
    selectors: Optional[HtmlSelectors] = None

    @model_validator(mode="after")
    def _html_needs_selectors(self) -> "FeedDescriptor":
        if self.kind == "html" and self.selectors is None:
            raise ValueError(f"html feed {self.url} has no selectors")
        return self

    @property
    def url_str(self) -> str:
        return str(self.url)


def parse_feeds(data: dict) -> List[FeedDescriptor]:
    """Validate the `feeds:` list of a loaded YAML document."""
    records = (data or {}).get("feeds") or []
    return [FeedDescriptor.model_validate(record) for record in records]


def load_feeds(path: Union[str, Path]) -> List[FeedDescriptor]:
    """
    Load feed descriptors from a YAML file.

    Args:
        path: YAML file with a top level `feeds` list

    Returns:
        Validated descriptors, inactive ones included

    Raises:
        FileNotFoundError: if the file does not exist
        pydantic.ValidationError: if a record is malformed
    """
    config_path = Path(path)
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    feeds = parse_feeds(data)
    logger.info(f"Loaded {len(feeds)} feeds from {config_path}")
    return feeds
