"""deb2nix: turn a Debian package into a Nix expression with its real runtime dependencies."""

__version__ = "0.3.0"
