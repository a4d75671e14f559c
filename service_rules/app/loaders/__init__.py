"""Rule loaders for remote and local rule sources."""
