"""addonsync: keep remote add-on collections in line with operator-curated groups."""

__version__ = "0.1.0"
