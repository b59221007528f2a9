"""GuildPass queue worker and operator CLI."""

__version__ = "1.0.0"
