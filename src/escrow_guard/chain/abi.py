"""ABI fragments for the contracts the engine talks to.

Only the functions and events the engine calls are listed.
"""

from __future__ import annotations


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _arg(name, type_, components=None, indexed=None):
    arg = {"name": name, "type": type_}
    if components is not None:
        arg["components"] = components
    if indexed is not None:
        arg["indexed"] = indexed
    return arg


_MILESTONE_COMPONENTS = [
    _arg("amount", "uint256"),
    _arg("description", "string"),
    _arg("completed", "bool"),
    _arg("completedAt", "uint256"),
]

_ESCROW_COMPONENTS = [
    _arg("id", "uint256"),
    _arg("buyer", "address"),
    _arg("seller", "address"),
    _arg("amount", "uint256"),
    _arg("platformFee", "uint256"),
    _arg("createdAt", "uint256"),
    _arg("expiresAt", "uint256"),
    _arg("status", "uint8"),
    _arg("description", "string"),
    _arg("metadataHash", "bytes32"),
    _arg("token", "address"),
]

ESCROW_MANAGER_ABI: list[dict] = [
    _fn(
        "createEscrow",
        [
            _arg("seller", "address"),
            _arg("description", "string"),
            _arg("metadataHash", "bytes32"),
            _arg("_milestones", "tuple[]", _MILESTONE_COMPONENTS),
            _arg("token", "address"),
            _arg("amount", "uint256"),
        ],
        [_arg("", "uint256")],
        mutability="payable",
    ),
    _fn("releasePayment", [_arg("escrowId", "uint256"), _arg("milestoneIndex", "uint256")]),
    _fn("fileDispute", [_arg("escrowId", "uint256"), _arg("reason", "string")]),
    _fn("cancelEscrow", [_arg("escrowId", "uint256")]),
    _fn("fundEscrow", [_arg("escrowId", "uint256")], mutability="payable"),
    _fn(
        "getEscrow",
        [_arg("escrowId", "uint256")],
        [_arg("", "tuple", _ESCROW_COMPONENTS)],
        mutability="view",
    ),
    _fn(
        "getMilestones",
        [_arg("escrowId", "uint256")],
        [_arg("", "tuple[]", _MILESTONE_COMPONENTS)],
        mutability="view",
    ),
    _fn("supportedTokens", [_arg("", "address")], [_arg("", "bool")], mutability="view"),
    {
        "type": "event",
        "name": "EscrowCreated",
        "anonymous": False,
        "inputs": [
            _arg("escrowId", "uint256", indexed=True),
            _arg("buyer", "address", indexed=True),
            _arg("seller", "address", indexed=True),
            _arg("amount", "uint256", indexed=False),
        ],
    },
]

DISPUTE_RESOLUTION_ABI: list[dict] = [
    _fn("openDispute", [_arg("_escrowId", "bytes32"), _arg("_evidence", "string")]),
    _fn("addEvidence", [_arg("_escrowId", "bytes32"), _arg("_evidence", "string")]),
    _fn("resolveDispute", [_arg("_escrowId", "bytes32"), _arg("_winner", "address")]),
    _fn(
        "disputes",
        [_arg("", "bytes32")],
        [
            _arg("escrowId", "bytes32"),
            _arg("buyer", "address"),
            _arg("seller", "address"),
            _arg("amount", "uint256"),
            _arg("token", "address"),
            _arg("status", "uint8"),
            _arg("buyerEvidence", "string"),
            _arg("sellerEvidence", "string"),
        ],
        mutability="view",
    ),
]

PAYMENT_PROCESSOR_ABI: list[dict] = [
    _fn(
        "makePayment",
        [_arg("_payee", "address"), _arg("_amount", "uint256"), _arg("_token", "address")],
        [_arg("", "bytes32")],
        mutability="payable",
    ),
]

ERC20_APPROVE_ABI: list[dict] = [
    _fn(
        "approve",
        [_arg("spender", "address"), _arg("amount", "uint256")],
        [_arg("", "bool")],
    ),
]
