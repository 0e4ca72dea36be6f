"""
Test utilities and helper functions.

Provides common functionality for test setup, data generation,
and result validation across the test suite.
"""

from .mock_data_generator import (
    create_mock_flux_table,
    create_mock_playlist,
    create_mock_root_file,
    create_mock_sources,
    flat_columns,
    generate_mock_events,
    make_event,
)
from .test_helpers import (
    assert_arrays_close,
    assert_file_exists,
    assert_histograms_close,
    assert_raises_with_message,
    assert_value_in_range,
    count_files_in_dir,
)

__all__ = [
    "assert_arrays_close",
    "assert_file_exists",
    "assert_histograms_close",
    "assert_raises_with_message",
    "assert_value_in_range",
    "count_files_in_dir",
    "create_mock_flux_table",
    "create_mock_playlist",
    "create_mock_root_file",
    "create_mock_sources",
    "flat_columns",
    "generate_mock_events",
    "make_event",
]
