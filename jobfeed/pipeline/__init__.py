"""Fetch, parse and normalize job feeds."""

from jobfeed.pipeline.fetcher import FeedFetcher
from jobfeed.pipeline.interfaces import FeedFetcherInterface, FetchFailure, RawPayload
from jobfeed.pipeline.normalizer import JobNormalizer
from jobfeed.pipeline.parser import FallbackParse, FeedParser, StructuredParse, extract_items_by_regex

__all__ = [
    "FeedFetcher",
    "FeedFetcherInterface",
    "FetchFailure",
    "RawPayload",
    "FeedParser",
    "StructuredParse",
    "FallbackParse",
    "extract_items_by_regex",
    "JobNormalizer",
]
