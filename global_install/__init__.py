"""Global install reconciliation engine.

Installs command-line packages (npm-style .tgz archives with a package.json
manifest) into a global prefix: a bin directory of command entries and a
module root with one directory per package.
"""

__version__ = "0.1.0"
