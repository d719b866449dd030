import unittest

import chess

from llmchess_providers.move_validator import (
    extract_moves_from_text,
    find_best_valid_move,
    get_random_legal_move,
    is_legal_move,
    is_valid_uci_format,
    legal_moves,
    san_for,
    side_to_move,
    validate_ai_response,
)

START = chess.STARTING_FEN
# white has been mated (fool's mate)
MATED = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"
PROMO = "8/4P3/8/8/8/8/k7/7K w - - 0 1"
CASTLE = "r3k2r/8/8/8/8/8/8/R3K2R w KQkq - 0 1"


class MoveValidatorTests(unittest.TestCase):
    def test_uci_format(self):
        self.assertTrue(is_valid_uci_format("e2e4"))
        self.assertTrue(is_valid_uci_format("e7e8q"))
        self.assertFalse(is_valid_uci_format("e2e9"))
        self.assertFalse(is_valid_uci_format("Nf3"))
        self.assertFalse(is_valid_uci_format(""))

    def test_random_legal_move_start_position(self):
        first_moves = set(legal_moves(START))
        self.assertEqual(len(first_moves), 20)
        for _ in range(25):
            self.assertIn(get_random_legal_move(START), first_moves)

    def test_null_move_tokens_are_not_legal(self):
        for token in ("--", "0000", "Z0", "@@@@"):
            with self.subTest(token=token):
                self.assertFalse(is_legal_move(START, token))
                self.assertIsNone(find_best_valid_move(START, token))

    def test_random_legal_move_without_legal_moves(self):
        self.assertIsNone(get_random_legal_move(MATED))
        self.assertIsNone(find_best_valid_move(MATED, "e2e4"))

    def test_is_legal_move_uci_and_san(self):
        self.assertTrue(is_legal_move(START, "e2e4"))
        self.assertTrue(is_legal_move(START, "Nf3"))
        self.assertFalse(is_legal_move(START, "e2e5"))
        self.assertFalse(is_legal_move(START, "Ke2"))
        self.assertFalse(is_legal_move("not a fen", "e2e4"))
        self.assertFalse(is_legal_move(START, ""))

    def test_find_best_valid_move_exact_and_fenced(self):
        self.assertEqual(find_best_valid_move(START, "e2e4"), "e2e4")
        self.assertEqual(find_best_valid_move(START, "  E2E4. "), "e2e4")
        self.assertEqual(find_best_valid_move(START, "```\ng1f3\n```"), "g1f3")

    def test_find_best_valid_move_scans_free_text(self):
        self.assertEqual(find_best_valid_move(START, "My move is d2d4 because it controls the centre."), "d2d4")
        # first UCI candidate is illegal, the second one is taken
        self.assertEqual(find_best_valid_move(START, "e2e5? no, c2c4"), "c2c4")

    def test_find_best_valid_move_san(self):
        self.assertEqual(find_best_valid_move(START, "I'll play Nf3"), "g1f3")
        self.assertEqual(find_best_valid_move(CASTLE, "Castle short: O-O"), "e1g1")
        self.assertEqual(find_best_valid_move(CASTLE, "0-0-0"), "e1c1")
        self.assertEqual(find_best_valid_move(PROMO, "e8=Q"), "e7e8q")

    def test_find_best_valid_move_nothing_usable(self):
        self.assertIsNone(find_best_valid_move(START, ""))
        self.assertIsNone(find_best_valid_move(START, "I resign."))
        self.assertIsNone(find_best_valid_move(START, "e2e5"))

    def test_find_best_valid_move_is_idempotent(self):
        replies = ["e2e4", "Let me think... Nf3 is best", "```b1c3```", "d2d4!"]
        for reply in replies:
            move = find_best_valid_move(START, reply)
            self.assertIsNotNone(move, reply)
            self.assertTrue(is_legal_move(START, move))
            self.assertEqual(find_best_valid_move(START, move), move)

    def test_extract_moves_orders_uci_first(self):
        moves = extract_moves_from_text("Nf3 or e2e4")
        self.assertEqual(moves[0], "e2e4")
        self.assertIn("Nf3", moves)

    def test_validate_ai_response(self):
        self.assertEqual(validate_ai_response(START, "e2e4"), {"ok": True, "move": "e2e4"})
        bad = validate_ai_response(START, "pass")
        self.assertFalse(bad["ok"])
        self.assertIsNone(bad["move"])
        self.assertEqual(validate_ai_response(START, "")["reason"], "empty_reply")

    def test_san_and_side_helpers(self):
        self.assertEqual(san_for(START, "g1f3"), "Nf3")
        self.assertIsNone(san_for(START, "e2e5"))
        self.assertEqual(side_to_move(START), "white")
        board = chess.Board()
        board.push_uci("e2e4")
        self.assertEqual(side_to_move(board.fen()), "black")


if __name__ == "__main__":
    unittest.main()
