"""
Demographic portal (demo.istat.it) module.

The portal publishes demographic datasets as downloadable files rather than
through the SDMX services. This module provides:

- A registry of the portal's datasets and their file naming patterns
- URL builders that validate the parameters of each pattern
- A caching file client with Last-Modified based update checks

Example:
    >>> from istatkit.demo import DemoClient, build_demo_url
    >>> build_demo_url("D7B", year=2024)
    'https://demo.istat.it/data/d7b/D7B2024.csv.zip'
    >>> frame = DemoClient().download("D7B", year=2024).data
"""

from istatkit.demo._client import (
    # Client
    DemoClient,
    FileUpdateCheck,
    FileUpdateReason,
    # File reading
    extract_demo_csv,
    read_demo_csv,
)
from istatkit.demo._registry import (
    # Registry
    DEMO_REGISTRY,
    DemoDataset,
    get_demo_categories,
    get_demo_dataset_info,
    get_demo_registry,
    list_demo_datasets,
    search_demo_datasets,
)
from istatkit.demo._urls import (
    # URL builders
    DemoFileParams,
    build_demo_url,
    get_demo_filename,
)

__all__ = [
    # Registry
    "DEMO_REGISTRY",
    "DemoDataset",
    "get_demo_registry",
    "get_demo_dataset_info",
    "get_demo_categories",
    "list_demo_datasets",
    "search_demo_datasets",
    # URL builders
    "DemoFileParams",
    "build_demo_url",
    "get_demo_filename",
    # Client
    "DemoClient",
    "FileUpdateCheck",
    "FileUpdateReason",
    "extract_demo_csv",
    "read_demo_csv",
]
