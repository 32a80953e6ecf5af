# Services package.
#
#   queries            composable statement plans for every article view
#   serializers        ORM rows to cache-ready dicts
#   article_service    cached read API over the query plans
#   editorial_service  transactional writes followed by invalidation
#   comment_service    comment submission and moderation
#   category_service   category tree maintenance
#   associations       tags and typed article metadata
#   invalidation       which cache tags and keys a write touches
#
# Service functions take an AsyncSession as their first argument.  Reads
# leave the transaction to ``get_db``; writes commit themselves so that
# invalidation runs after the data is durable.
