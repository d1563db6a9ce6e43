# dbuild/modules/__init__.py
