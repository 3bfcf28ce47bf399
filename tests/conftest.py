import os

# Keep test runs from writing log files; must be set before crmpulse is imported
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
