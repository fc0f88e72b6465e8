"""
Application configuration

Settings are loaded from the environment and an optional .env file.
"""
