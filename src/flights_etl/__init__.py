"""Flights base/incoming reconciliation ETL."""
