"""Plan execution in parallel, sequential, mixed and batch modes."""
