# authstate/storage/providers/__init__.py
