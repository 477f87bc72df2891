"""Shared configuration, logging and storage for the Elvira agent."""

__version__ = "0.1.0"
