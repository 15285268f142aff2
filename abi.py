"""JobBoard contract ABI.

Only the surface the client touches: three reads, seven writes and the
eight lifecycle events. `getJob` returns the job struct positionally:
(id, employer, freelancer, title, descriptionCID, budget, status, escrowedAt).
"""


def _fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name, *params):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "indexed": indexed} for n, t, indexed in params
        ],
    }


JOB_STRUCT = {
    "name": "",
    "type": "tuple",
    "components": [
        {"name": "id", "type": "uint256"},
        {"name": "employer", "type": "address"},
        {"name": "freelancer", "type": "address"},
        {"name": "title", "type": "string"},
        {"name": "descriptionCID", "type": "string"},
        {"name": "budget", "type": "uint256"},
        {"name": "status", "type": "uint8"},
        {"name": "escrowedAt", "type": "uint256"},
    ],
}

_UINT = {"name": "", "type": "uint256"}

JOB_BOARD_ABI = [
    # Reads
    _fn("getJobCount", outputs=[_UINT], mutability="view"),
    _fn("getJob", [("_jobId", "uint256")], [JOB_STRUCT], mutability="view"),
    _fn("getEscrowAmount", [("_jobId", "uint256")], [_UINT], mutability="view"),
    # Writes
    _fn("postJob", [("_title", "string"), ("_descriptionCID", "string"), ("_budget", "uint256")]),
    _fn("escrowFunds", [("_jobId", "uint256")], mutability="payable"),
    _fn("applyForJob", [("_jobId", "uint256")]),
    _fn("markWorkDone", [("_jobId", "uint256")]),
    _fn("releasePayment", [("_jobId", "uint256")]),
    _fn("refundEmployer", [("_jobId", "uint256")]),
    _fn("raiseDispute", [("_jobId", "uint256")]),
    # Events
    _event("JobPosted", ("jobId", "uint256", True), ("employer", "address", True),
           ("title", "string", False), ("budget", "uint256", False)),
    _event("JobApplied", ("jobId", "uint256", True), ("freelancer", "address", True)),
    _event("PaymentEscrowed", ("jobId", "uint256", True), ("amount", "uint256", False)),
    _event("PaymentReleased", ("jobId", "uint256", True), ("freelancer", "address", True),
           ("amount", "uint256", False)),
    _event("EmployerRefunded", ("jobId", "uint256", True), ("amount", "uint256", False)),
    _event("DisputeRaised", ("jobId", "uint256", True), ("raisedBy", "address", True)),
    _event("DisputeResolved", ("jobId", "uint256", True), ("winner", "address", True)),
    _event("WorkSubmitted", ("jobId", "uint256", True), ("freelancer", "address", True)),
]

EVENT_ABIS = {entry["name"]: entry for entry in JOB_BOARD_ABI if entry["type"] == "event"}
