class ReferralTreeError(Exception):
    """base class for everything the placement/distribution engine raises."""


class ValidationError(ReferralTreeError, ValueError):
    """malformed input, rejected before any store mutation."""


# ---------
# placement
# ---------

class AlreadyPlaced(ReferralTreeError, ValueError):
    def __init__(self, member_id: str):
        super().__init__(f"Member {member_id} is already placed in the tree.")
        self.member_id = member_id


class UnknownReferrer(ReferralTreeError, ValueError):
    def __init__(self, referrer_id: str):
        super().__init__(f"Referrer {referrer_id} is not in the tree.")
        self.referrer_id = referrer_id


class TreeFull(ReferralTreeError):
    """no node anywhere has an open slot."""


class PlacementFailed(ReferralTreeError):
    """slot claim kept losing races; nothing was written."""


# ---------
# distribution
# ---------

class UnknownPayer(ReferralTreeError, ValueError):
    def __init__(self, member_id: str):
        super().__init__(f"Payer {member_id} is not in the tree.")
        self.member_id = member_id


class DistributionFailed(ReferralTreeError):
    """the run was aborted; no events were written and it is safe to retry."""


# ---------
# store level
# ---------

class DuplicateNode(ReferralTreeError, ValueError):
    def __init__(self, member_id: str):
        super().__init__(f"Tree node {member_id} already exists.")
        self.member_id = member_id


class TreeNotInitialized(ReferralTreeError):
    """the root has not been bootstrapped yet."""


class StoreConflict(ReferralTreeError):
    """transient conflict with a concurrent writer. re-read and retry."""


class SlotConflict(StoreConflict):
    def __init__(self, parent_id: str, position: int):
        super().__init__(
            f"Slot {position} under {parent_id} was claimed by a concurrent placement."
        )
        self.parent_id = parent_id
        self.position = position


class BatchConflict(ReferralTreeError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} already has a distribution batch.")
        self.payment_id = payment_id


class UnknownMember(ReferralTreeError, ValueError):
    def __init__(self, member_id: str):
        super().__init__(f"Member {member_id} is not in the tree.")
        self.member_id = member_id
