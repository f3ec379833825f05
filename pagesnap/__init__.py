"""Fair-share multi-job page screenshot crawler."""
