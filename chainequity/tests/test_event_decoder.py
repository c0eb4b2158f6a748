"""
Tests of the event_decoder module
"""

import unittest

from eth_utils import keccak

from chainequity.core.errors import DecodingError
from chainequity.core.event_decoder import (
    KNOWN_EVENTS,
    TRANSFER,
    EventDecoder,
    to_transactions,
)
from chainequity.core.types import EventType
from chainequity.tests.utils import (
    ALICE,
    BOB,
    CAP_TABLE_ADDRESS,
    SHARES,
    TOKEN_ADDRESS,
    LogTemplate,
    corporate_action_recorded,
    issued,
    make_log,
    mint,
    split_executed,
    symbol_changed,
    token_linked,
    transfer,
    transfers_restricted_changed,
    tx_hash,
    wallet_approved,
)
from chainequity.utils.hex_utils import ZERO_ADDRESS


class TestEventDecoder(unittest.TestCase):
    """
    Test decoding of raw logs into domain events.
    """

    def setUp(self):
        self.decoder = EventDecoder()

    def test_topics_cover_known_events(self):
        self.assertEqual(len(self.decoder.topics), len(KNOWN_EVENTS))
        self.assertEqual(
            TRANSFER.topic,
            "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
        )

    def test_decode_transfer(self):
        log = make_log(transfer(ALICE, BOB, 10**24, tx_hash(1)))
        event = self.decoder.decode(log)
        self.assertEqual(event.name, "Transfer")
        self.assertEqual(event.contract_address, TOKEN_ADDRESS)
        self.assertEqual(event.args["from"], ALICE)
        self.assertEqual(event.args["to"], BOB)
        self.assertEqual(event.args["value"], 10**24)

    def test_decode_issued(self):
        event = self.decoder.decode(make_log(issued(ALICE, 1000 * SHARES, tx_hash(1))))
        self.assertEqual(event.name, "Issued")
        self.assertEqual(event.args, {"to": ALICE, "amount": 1000 * SHARES})

    def test_decode_admin_events(self):
        event = self.decoder.decode(make_log(symbol_changed("CEQ", "CEQX", tx_hash(1))))
        self.assertEqual(event.args, {"oldSymbol": "CEQ", "newSymbol": "CEQX"})

        event = self.decoder.decode(
            make_log(transfers_restricted_changed(True, tx_hash(2)))
        )
        self.assertIs(event.args["restricted"], True)

        event = self.decoder.decode(
            make_log(split_executed(SHARES, 7 * SHARES, 42, tx_hash(3)))
        )
        self.assertEqual(
            event.args,
            {"oldFactor": SHARES, "newFactor": 7 * SHARES, "blockNumber": 42},
        )

        event = self.decoder.decode(make_log(wallet_approved(BOB, tx_hash(4))))
        self.assertEqual(event.args["wallet"], BOB)

        event = self.decoder.decode(
            make_log(token_linked(CAP_TABLE_ADDRESS, TOKEN_ADDRESS, tx_hash(5)))
        )
        self.assertEqual(
            event.args, {"capTable": CAP_TABLE_ADDRESS, "token": TOKEN_ADDRESS}
        )

    def test_indexed_string_is_kept_as_hash(self):
        event = self.decoder.decode(
            make_log(corporate_action_recorded(3, "SPLIT", 100, tx_hash(1)))
        )
        self.assertEqual(event.name, "CorporateActionRecorded")
        self.assertEqual(event.args["actionId"], 3)
        self.assertEqual(
            event.args["actionTypeHash"], "0x" + keccak(text="SPLIT").hex()
        )
        self.assertEqual(event.args["blockNumber"], 100)

    def test_unknown_signature_is_ignored(self):
        template = LogTemplate(
            TOKEN_ADDRESS,
            ("0x" + keccak(text="Paused(address)").hex(),),
            "0x",
            tx_hash(1),
        )
        self.assertIsNone(self.decoder.decode(make_log(template)))

    def test_log_without_topics_is_ignored(self):
        template = LogTemplate(TOKEN_ADDRESS, (), "0x", tx_hash(1))
        self.assertIsNone(self.decoder.decode(make_log(template)))

    def test_wrong_topic_count_raises(self):
        good = transfer(ALICE, BOB, 1, tx_hash(1))
        bad = LogTemplate(
            good.address, good.topics[:2], good.data, good.transaction_hash
        )
        with self.assertRaises(DecodingError):
            self.decoder.decode(make_log(bad))

    def test_truncated_data_raises(self):
        good = issued(ALICE, 1, tx_hash(1))
        bad = LogTemplate(
            good.address, good.topics, good.data[:20], good.transaction_hash
        )
        with self.assertRaises(DecodingError) as cm:
            self.decoder.decode(make_log(bad))
        # Decoding errors are value errors for callers that do not know the taxonomy.
        self.assertIsInstance(cm.exception, ValueError)


class TestToTransactions(unittest.TestCase):
    """
    Test the projection of decoded events into transactions.
    """

    def setUp(self):
        self.decoder = EventDecoder()

    def _events(self, templates, block_number=1):
        return [
            self.decoder.decode(make_log(t, block_number, i))
            for i, t in enumerate(templates)
        ]

    def test_mint_produces_single_issued_row(self):
        events = self._events(mint(ALICE, 1000 * SHARES, tx_hash(1)))
        transactions = to_transactions(events, {1: 1_700_000_012})
        self.assertEqual(len(transactions), 1)
        self.assertEqual(transactions[0].event_type, EventType.ISSUED)
        self.assertIsNone(transactions[0].from_address)
        self.assertEqual(transactions[0].to_address, ALICE)
        self.assertEqual(transactions[0].amount, str(1000 * SHARES))
        # The Issued log follows the Transfer log within the mint.
        self.assertEqual(transactions[0].log_index, 1)
        self.assertEqual(transactions[0].block_timestamp, 1_700_000_012)

    def test_zero_address_transfer_alone_is_issued(self):
        events = self._events([transfer(ZERO_ADDRESS, BOB, 5, tx_hash(1))])
        transactions = to_transactions(events, {})
        self.assertEqual(len(transactions), 1)
        self.assertEqual(transactions[0].event_type, EventType.ISSUED)
        self.assertIsNone(transactions[0].from_address)
        self.assertIsNone(transactions[0].block_timestamp)

    def test_unpaired_mint_in_other_transaction_is_kept(self):
        events = self._events(
            [transfer(ZERO_ADDRESS, BOB, 5, tx_hash(1)), issued(BOB, 5, tx_hash(2))]
        )
        transactions = to_transactions(events, {})
        self.assertEqual(
            [t.transaction_hash for t in transactions], [tx_hash(1), tx_hash(2)]
        )
        self.assertTrue(all(t.event_type == EventType.ISSUED for t in transactions))

    def test_regular_transfer(self):
        events = self._events([transfer(ALICE, BOB, 10**24, tx_hash(1))])
        (transaction,) = to_transactions(events, {})
        self.assertEqual(transaction.event_type, EventType.TRANSFER)
        self.assertEqual(transaction.from_address, ALICE)
        self.assertEqual(transaction.to_address, BOB)
        self.assertEqual(transaction.amount, "1000000000000000000000000")

    def test_admin_events_are_not_transactions(self):
        events = self._events(
            [
                symbol_changed("A", "B", tx_hash(1)),
                wallet_approved(ALICE, tx_hash(2)),
                split_executed(SHARES, 2 * SHARES, 1, tx_hash(3)),
            ]
        )
        self.assertEqual(to_transactions(events, {}), [])

    def test_output_is_ordered(self):
        later = self._events([transfer(ALICE, BOB, 1, tx_hash(2))], block_number=5)
        earlier = self._events(
            [issued(ALICE, 2, tx_hash(1)), transfer(BOB, ALICE, 1, tx_hash(3))],
            block_number=2,
        )
        transactions = to_transactions(later + earlier, {})
        self.assertEqual(
            [t.sort_key for t in transactions], [(2, 0), (2, 1), (5, 0)]
        )


if __name__ == "__main__":
    unittest.main()
