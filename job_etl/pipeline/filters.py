"""
Listing filters applied to references before batching.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import FrozenSet, Optional

from job_etl.models import ListingReference, PipelineRunOptions


def _fold(values) -> FrozenSet[str]:
    return frozenset(v.strip().casefold() for v in values if v and v.strip())


@dataclass(frozen=True)
class ListingFilters:
    """
    Date range, organization and location filters.

    Dates are inclusive. A reference without a posted date passes the date
    filter. Organization and location match case-insensitively against the
    whole value.
    """

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    organizations: FrozenSet[str] = field(default_factory=frozenset)
    locations: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_options(cls, options: PipelineRunOptions) -> "ListingFilters":
        return cls(
            start_date=options.start_date,
            end_date=options.end_date,
            organizations=_fold(options.organizations),
            locations=_fold(options.locations),
        )

    @property
    def active(self) -> bool:
        return bool(self.start_date or self.end_date or self.organizations or self.locations)

    def matches(self, reference: ListingReference) -> bool:
        posted = reference.posted_date
        if posted is not None:
            if self.start_date and posted < self.start_date:
                return False
            if self.end_date and posted > self.end_date:
                return False

        if self.organizations and (reference.organization or "").strip().casefold() not in self.organizations:
            return False

        if self.locations and (reference.location or "").strip().casefold() not in self.locations:
            return False

        return True
