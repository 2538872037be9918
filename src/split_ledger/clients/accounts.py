"""Accounts API client used for linked money transfers."""

import logging

import httpx

from ..money import Money

logger = logging.getLogger(__name__)


class AccountsClient:
    """Client for the finance dashboard's accounts API."""

    def __init__(self, base_url: str, access_token: str, timeout: float = 30.0):
        """Initialize the accounts client."""
        self.base_url = base_url
        self.client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Money,
        reference: str,
    ) -> str:
        """
        Move money between two accounts.

        Args:
            from_account_id: Account the money leaves
            to_account_id: Account the money arrives in
            amount: Amount to move (must be positive)
            reference: Idempotency reference, the ledger payment id

        Returns:
            The created transfer ID
        """
        if amount.amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")

        payload = {
            "fromAccountId": from_account_id,
            "toAccountId": to_account_id,
            "amount": str(amount.to_decimal()),
            "currency": amount.currency,
            "reference": reference,
        }
        logger.debug(f"Transfer payload: {payload}")

        try:
            response = self.client.post("/transfers", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Accounts API error: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise

        data = response.json()
        transfer_id: str = data["data"]["id"]
        logger.info(f"Created transfer {transfer_id} for {amount} ({reference})")
        return transfer_id

    def reverse(self, transfer_id: str, reference: str) -> None:
        """Reverse a previously created transfer."""
        try:
            response = self.client.post(
                f"/transfers/{transfer_id}/reverse", json={"reference": reference}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Accounts API error reversing {transfer_id}: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise

        logger.info(f"Reversed transfer {transfer_id} ({reference})")
