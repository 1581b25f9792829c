"""SQLite persistence for tasks, dependencies, instructions, and task events."""
