"""Rule management logic, independent of HTTP.

- identity.py / platform.py: pure functions (rule ids, platform classification)
- rule_index.py / relabel_index.py: watch-fed caches over resource_index.ResourceIndex
- rule_mutator.py: create/delete/get/update/list on top of the indexes and the Kubernetes stores
- watcher.py: background consumers feeding the indexes
"""
