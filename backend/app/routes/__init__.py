# Route packages. Every endpoint is versioned under v1/; main.py mounts
# /health and /metrics at the root.
