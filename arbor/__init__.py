"""arbor: an expression language over lazily evaluated async trees."""
