"""Test suite for recruit_stats."""
