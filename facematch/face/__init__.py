"""Face descriptor building blocks (descriptor/matcher/gallery).

The matcher is pure and stateless; the gallery is the only piece that holds
enrolled templates and logs what it does with them.
"""
