"""Tool modules built on gitsync_core."""
