"""Tests for job package exports."""

import delegation.jobs as jobs


def test_public_exports():
    for name in jobs.__all__:
        assert hasattr(jobs, name), name


def test_store_is_exported():
    from delegation.jobs import JobStore

    assert JobStore().count() == 0
