"""CLI module for qqbridge."""
