"""SQLite-backed persistence for the memory layers.

Modules here are imported directly (``agent_memory.storage.event_store`` and
so on); the package itself exports nothing so that the embedding layer can
depend on the cache without import cycles.
"""
