from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for catalog, stock, customer and invoice listings.

    `?page_size=` is honoured up to `max_page_size`.
    """

    page_size_query_param = "page_size"
    max_page_size = 200


class LedgerPagination(StandardResultsSetPagination):
    """Movement history grows without bound; keep pages smaller by default."""

    page_size = 100
    max_page_size = 500
