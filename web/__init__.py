"""JSON API for the activity recorder."""
