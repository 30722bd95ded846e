# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic, database access and cache-aside reads for a single
# aggregate:
#
#   user_service  — CRUD, email lookup, recent posts and stats for User
#   post_service  — CRUD + like toggling for Post
#
# All service functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.  Failures are raised as ``app.errors`` exceptions.
