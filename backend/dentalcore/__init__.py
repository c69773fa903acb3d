"""Clinical records data-access core."""
