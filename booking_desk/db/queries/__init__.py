"""SQL for each table, written once with ``%s`` placeholders."""
