"""HTTP ingress: enqueue addresses for indexing and report job status."""
