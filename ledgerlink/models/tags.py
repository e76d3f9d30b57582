"""
Tag Models

A tag is the short correlation identifier embedded in a transaction note
between '#' delimiters. Three kinds exist:

- Regular   ``#A3K9M2#``   links one personal expense to its shared copy
- Balancing ``#B-A3K9M2#`` ties together the four legs of a settle-up
- Monthly   ``#M-01-26#``  marks a participant's monthly contribution

DESIGN DECISION: Tags are parsed once into a tagged union. Callers
dispatch on ``tag.kind`` instead of re-checking string prefixes.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TagKind(str, Enum):
    """Kind of correlation tag, derived from its prefix."""
    REGULAR = "regular"
    BALANCING = "balancing"
    MONTHLY = "monthly"


class MonthlyInfo(BaseModel):
    """Month and four-digit year carried by a Monthly tag."""
    model_config = ConfigDict(frozen=True)

    month: int
    year: int


class RegularTag(BaseModel):
    """Tag linking a personal expense to a shared-ledger transaction."""
    model_config = ConfigDict(frozen=True)

    kind: Literal[TagKind.REGULAR] = TagKind.REGULAR
    value: str = Field(..., min_length=1)


class BalancingTag(BaseModel):
    """Tag shared by every leg of one balancing (settle-up) set."""
    model_config = ConfigDict(frozen=True)

    kind: Literal[TagKind.BALANCING] = TagKind.BALANCING
    value: str = Field(..., min_length=3)


class MonthlyTag(BaseModel):
    """
    Deterministic tag for a monthly contribution.

    ``month``/``year`` are None when the tag has the ``M-`` prefix
    but not the ``M-MM-YY`` shape.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal[TagKind.MONTHLY] = TagKind.MONTHLY
    value: str = Field(..., min_length=3)
    month: Optional[int] = None
    year: Optional[int] = None

    @property
    def info(self) -> Optional[MonthlyInfo]:
        if self.month is None or self.year is None:
            return None
        return MonthlyInfo(month=self.month, year=self.year)


Tag = Annotated[
    Union[RegularTag, BalancingTag, MonthlyTag],
    Field(discriminator="kind"),
]
