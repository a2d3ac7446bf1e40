"""kryten-mana — Decaying mana ledger microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-mana")
except PackageNotFoundError:
    __version__ = "0.0.0"
