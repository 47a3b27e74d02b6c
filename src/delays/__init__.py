"""
Transit delay data: events, the in-memory delay table and its schema.

**Usage:**
```python
from delays import DelayDataset

data = DelayDataset.from_parquet("data/delays.parquet")
small = data.subsample(0.001, random_seed=853)
print(small.schema)
```
"""

from delays.dataset import (
    DAYS,
    MODES,
    REQUIRED_COLUMNS,
    DelayDataset,
    DelayEvent,
    parse_hour,
)

__all__ = [
    "DAYS",
    "MODES",
    "REQUIRED_COLUMNS",
    "DelayDataset",
    "DelayEvent",
    "parse_hour",
]
