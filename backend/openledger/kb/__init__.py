from openledger.kb.loader import KBIndex, KBLoader, LoadedKB, load_kb

__all__ = ["KBIndex", "KBLoader", "LoadedKB", "load_kb"]
