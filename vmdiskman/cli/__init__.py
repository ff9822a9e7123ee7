# vmdiskman/cli/__init__.py
