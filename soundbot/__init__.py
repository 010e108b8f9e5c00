"""twitch-soundbot — Chat and channel-points sound effects with a VIP economy."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("twitch-soundbot")
except PackageNotFoundError:
    __version__ = "0.0.0"
