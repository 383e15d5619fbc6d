"""Recruitment stats aggregation: calendar, dirty tracking, worker and scheduler."""
