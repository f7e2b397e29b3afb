"""Pipelines: intake orchestration, inserts and admin queries."""
