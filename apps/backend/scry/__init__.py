"""Spaced-repetition scheduling engine and review API."""
