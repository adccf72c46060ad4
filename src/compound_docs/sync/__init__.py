"""File synchronization: watcher, debouncer, reconciler, worker."""
