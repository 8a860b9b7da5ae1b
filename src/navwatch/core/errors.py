"""Failures raised by the NAV pipeline. All of them are local to one company, rule or day."""


class MnavError(Exception):
    """Base class for everything the monitor treats as a per-company failure."""


class MissingInputs(MnavError):
    pass


class MissingPriceData(MissingInputs):
    """No usable live price for the equity or the held asset."""


class MissingMetricData(MissingInputs):
    """The latest derived metric lacks holdings, shares or cash."""


class InvalidNav(MnavError):
    """Total NAV is non-positive or non-finite; points at bad upstream data."""


class PriceUnavailable(MnavError):
    """A price gateway could not produce a quote."""


class StoreWriteFailure(MnavError):
    """A notification or cooldown write failed. Retried on the next scheduled run."""


class UnknownCompany(MnavError):
    """No company row for the requested id."""
