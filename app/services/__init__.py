# Services package.
#
# Each module exposes async functions that hold the business logic and
# database access for one concern:
#
#   post_service      - post CRUD, listing/search, likes and views
#   ranking_service   - related-content and popularity rankings
#   category_service  - category CRUD, rename and delete-with-reassign
#   counter_service   - Category.post_count synchronisation + reconciliation
#   user_service      - author registry
#   analytics_service - editorial dashboard reports
#
# Service functions take an AsyncSession first so the router layer owns
# the transaction boundary through the ``get_db`` dependency.  Writes mark
# the cached route prefixes they touch with ``mark_stale``; they are
# evicted once the transaction commits.
