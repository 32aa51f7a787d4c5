"""
Agent version information.

Version follows semantic versioning (https://semver.org/): MAJOR.MINOR.PATCH
"""

MAJOR = 1
MINOR = 0
PATCH = 0

__version__ = f"{MAJOR}.{MINOR}.{PATCH}"
__app_name__ = "PM2 Client Agent"
