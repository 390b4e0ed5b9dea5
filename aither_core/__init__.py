"""AitherZero core: inter-module communication hub and dependency-ordered module loader."""
