"""Test suite for nuke_xsec."""
