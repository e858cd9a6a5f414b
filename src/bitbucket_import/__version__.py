"""Version information for the Bitbucket Server import module.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "1.2.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 1.2.0 - Import-stage failure recording, waiter polling
# 1.1.0 - Keep-around ref fetching behind fetch_commits_for_bitbucket_server
# 1.0.0 - Parallel pull request scheduling with processed-set resumption
