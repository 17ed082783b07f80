from openledger.models.consent import ConsentGate, ConsentReceipt  # noqa: F401
