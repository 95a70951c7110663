"""Command-line commands for bt."""
