from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for journal, customer and sale listings.

    `?page_size=` is honoured up to `max_page_size` so a movement journal
    can be pulled in a few requests without unbounded payloads.
    """

    page_size_query_param = "page_size"
    max_page_size = 500
