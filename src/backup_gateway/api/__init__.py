"""REST control plane: operation lock, metrics, routes and reload loop."""
