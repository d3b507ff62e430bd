"""Client-local replica of a remotely published, versioned blob dataset."""
