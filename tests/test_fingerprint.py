"""Tests for work item fingerprints."""

from cronmaster.core.fingerprint import fingerprint
from cronmaster.models import Category, Severity


def test_stable_hex_digest():
    fp = fingerprint("ops", "HIGH", "Route returns 503", "/apps")
    assert fp == fingerprint("ops", "HIGH", "Route returns 503", "/apps")
    assert len(fp) == 64
    int(fp, 16)


def test_enum_and_text_agree():
    assert fingerprint(Category.OPS, Severity.HIGH, "t", "/x") == fingerprint("ops", "high", "t", "/x")


def test_surrounding_whitespace_ignored():
    assert fingerprint("ops", "HIGH", "  Title  ", " /x ") == fingerprint("ops", "HIGH", "Title", "/x")


def test_missing_locator_same_as_empty():
    assert fingerprint("ops", "LOW", "t") == fingerprint("ops", "LOW", "t", "")


def test_any_field_changes_digest():
    base = fingerprint("ops", "HIGH", "Title", "/x")
    assert fingerprint("api", "HIGH", "Title", "/x") != base
    assert fingerprint("ops", "LOW", "Title", "/x") != base
    assert fingerprint("ops", "HIGH", "Other", "/x") != base
    assert fingerprint("ops", "HIGH", "Title", "/y") != base


def test_title_case_matters():
    assert fingerprint("ops", "HIGH", "Title") != fingerprint("ops", "HIGH", "title")
