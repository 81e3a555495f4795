from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from errors import UnknownMember
from ledger import DistributionLedger
from models import COMPANY_ACCOUNT, LedgerTotals, as_utc
from tree_store import TreeStore


class ReportingFacade:
    """
    read-only views over the tree and the ledger for admin tooling.
    nothing here writes.
    """

    def __init__(self, tree: TreeStore, ledger: DistributionLedger):
        self.tree = tree
        self.ledger = ledger

    def aggregate_totals(self) -> LedgerTotals:
        return self.ledger.aggregate_totals()

    def payment_events(self, payment_id: str) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.ledger.list_by_payment(payment_id)]

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.ledger.list_events(limit)]

    def member_earnings(
        self,
        member_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        include_breakdown: bool = False,
        breakdown_limit: int = 50,
    ) -> Dict[str, Any]:
        """
        aggregate MLM earnings for a member (or the company account).

        - no window: all-time total comes from the running balance.
        - with `since`/`until`: total is summed from events in [since, until).
        """
        if member_id != COMPANY_ACCOUNT and self.tree.get_node(member_id) is None:
            raise UnknownMember(member_id)

        since, until = as_utc(since), as_utc(until)
        use_range = since is not None or until is not None
        events = self.ledger.list_by_member(member_id, since=since, until=until)

        if use_range:
            total = sum((e.amount for e in events), Decimal("0"))
        else:
            total = self.ledger.member_balance(member_id)

        response: Dict[str, Any] = {
            "member_id": member_id,
            "total": f"{total:.2f}",
            "distributions": len(events),
            "payments": len({e.source_payment_id for e in events}),
        }
        if use_range:
            response["range"] = {
                "from": since.isoformat() if since else None,
                "to": until.isoformat() if until else None,
            }
        if include_breakdown:
            response["breakdown"] = [
                {
                    "payment_id": e.source_payment_id,
                    "payer_id": e.payer_id,
                    "depth": e.depth,
                    "amount": f"{e.amount:.2f}",
                    "created_at": e.created_at.isoformat(),
                }
                for e in events[:breakdown_limit]
            ]
        return response

    def network_levels(
        self,
        member_id: str,
        max_levels: int = 3,
        limit_per_level: int = 50,
    ) -> List[Dict[str, Any]]:
        """
        downline of `member_id` by relative level:

        [
          {"level": 1, "members": [...]},
          {"level": 2, "members": [...]},
          ...
        ]
        """
        node = self.tree.get_node(member_id)
        if node is None:
            raise UnknownMember(member_id)

        levels: List[Dict[str, Any]] = []
        current_level = [node]

        for level in range(1, max_levels + 1):
            next_level = []
            for parent in current_level:
                if parent.child_slots:
                    next_level.extend(self.tree.list_children(parent.member_id))

            members = [
                {
                    "member_id": n.member_id,
                    "parent_id": n.parent_id,
                    "level": n.level,
                    "position": n.position,
                    "children_count": n.children_count,
                }
                for n in next_level[:limit_per_level]
            ]
            levels.append({"level": level, "members": members})
            current_level = next_level

        return levels

    def tree_listing(self) -> List[Dict[str, Any]]:
        out = []
        for n in self.tree.list_nodes():
            row = n.to_dict()
            row["children_count"] = n.children_count
            out.append(row)
        return out

    def tree_stats(self) -> Dict[str, Any]:
        nodes = self.tree.list_nodes()
        max_children = self.tree.max_children
        non_root = [n for n in nodes if not n.is_root]
        return {
            "members_in_tree": len(non_root),
            "max_level": max((n.level for n in nodes), default=0),
            "open_slots": sum(max_children - n.children_count for n in nodes),
            "full_nodes": sum(1 for n in nodes if n.children_count >= max_children),
        }
