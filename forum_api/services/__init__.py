# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic and database access for one aggregate:
#
#   vote_service     - ledger/tally protocol shared by posts and comments
#   post_service     - posts, tags, listing, search, delete cascade
#   comment_service  - threaded comments on posts
#   user_service     - registration, login, admin account operations
#
# All service functions accept an AsyncSession as their first argument.
# Plain reads and single-row writes flush and leave the commit to the
# ``get_db`` dependency.  Votes, reconciliations and delete cascades own
# their transaction through ``database.atomic`` so they commit or roll
# back as one unit before the response is built.
