"""photoreel: image-to-video order worker."""
