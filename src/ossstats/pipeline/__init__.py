"""Scheduled jobs and their Prefect flows."""
