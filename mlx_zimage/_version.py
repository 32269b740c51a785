# Copyright © 2025 Apple Inc.

__version__ = "0.1.0"
