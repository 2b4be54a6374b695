"""Image conversion service: single-image and bulk WebP/AVIF conversion."""
