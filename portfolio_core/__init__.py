"""Portfolio core: vendor deduplication and portfolio metrics."""
