# bloom/api/__init__.py
#routers live in bloom.api.routers, the app is assembled in bloom.main.create_app
