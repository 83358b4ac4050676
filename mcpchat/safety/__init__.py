"""Content-safety screening for user requests and tool results."""
