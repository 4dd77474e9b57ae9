# Intel Module - CISA Known Exploited Vulnerabilities Feed Fetcher
#
# Concrete FeedFetcher for the CISA KEV catalog, a single static JSON
# document (no key, no pagination) listing vulnerabilities with confirmed
# in-the-wild exploitation.  The cisagov/kev-data GitHub mirror serves the
# same document and is used as a second probe shape.

import logging
from typing import List

from .fetcher import FeedFetcher, RequestShape
from .models import RawPayload, ThreatSource

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = (
    "https://www.cisa.gov/sites/default/files/feeds/"
    "known_exploited_vulnerabilities.json"
)
MIRROR_FEED_URL = (
    "https://raw.githubusercontent.com/cisagov/kev-data/main/"
    "known_exploited_vulnerabilities.json"
)


class CISAFetcher(FeedFetcher):
    """CISA Known Exploited Vulnerabilities catalog adapter.

    Usage::

        fetcher = CISAFetcher()
        fetcher.configure()
        payload = fetcher.fetch()   # {"vulnerabilities": [...], ...}
    """

    source = ThreatSource.CISA
    envelope_key = "vulnerabilities"

    def __init__(self):
        super().__init__("cisa-kev")
        self._feed_url: str = DEFAULT_FEED_URL
        self._mirror_url: str = MIRROR_FEED_URL

    def configure(self, **kwargs) -> None:
        """Configure the CISA fetcher.

        Keyword Args:
            feed_url: Override the catalog URL.
            mirror_url: Override the probe mirror URL.
            min_interval: Minimum seconds between calls (default 0).
        """
        self._configure_common(kwargs, min_interval=0.0)
        self._feed_url = kwargs.get("feed_url", DEFAULT_FEED_URL)
        self._mirror_url = kwargs.get("mirror_url", MIRROR_FEED_URL)

    def probe_shapes(self) -> List[RequestShape]:
        return [
            RequestShape(name="CISA catalog", url=self._feed_url),
            RequestShape(name="kev-data mirror", url=self._mirror_url),
        ]

    def _fetch_payload(self) -> RawPayload:
        data = self._request(self._feed_url)
        logger.info(
            "CISA KEV catalog %s: %d entries",
            data.get("catalogVersion", "?"),
            len(data.get("vulnerabilities") or []),
        )
        return data
