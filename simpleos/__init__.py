"""A small kernel modelled in software: console, block device, page allocator, FAT16 volume and scheduler."""

__version__ = "0.1.0"