from courierhub.models.user import User
from courierhub.models.listing import Listing, ListingStatus
from courierhub.models.bid import Bid, BidStatus
from courierhub.models.wallet import EntryType, WalletEntry
from courierhub.models.notification import ListingNotification
from courierhub.models.review import Review

__all__ = [
    "User",
    "Listing",
    "ListingStatus",
    "Bid",
    "BidStatus",
    "EntryType",
    "WalletEntry",
    "ListingNotification",
    "Review",
]
