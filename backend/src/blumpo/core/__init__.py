"""Core configuration, logging and database setup."""
