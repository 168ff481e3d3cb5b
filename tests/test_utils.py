"""
Tests for utils.py
"""
import base64
from unittest.mock import patch

import pytest
from solders.pubkey import Pubkey

from margin_pipeline.utils import (
    b64decode_account_data,
    dedupe,
    get_terminal_colors,
    short_key,
    sol_to_lamports,
    to_pubkey,
)


class TestGetTerminalColors:
    """Tests for get_terminal_colors function."""

    def test_get_terminal_colors_with_tty(self):
        """Test get_terminal_colors returns color codes when stdout is a TTY."""
        with patch('sys.stdout.isatty', return_value=True):
            colors = get_terminal_colors()
            assert colors['GREEN'] == '\033[92m'
            assert colors['CYAN'] == '\033[96m'
            assert colors['YELLOW'] == '\033[93m'
            assert colors['RED'] == '\033[91m'
            assert colors['DIM'] == '\033[90m'
            assert colors['RESET'] == '\033[0m'

    def test_get_terminal_colors_without_tty(self):
        """Test get_terminal_colors returns empty strings when stdout is not a TTY."""
        with patch('sys.stdout.isatty', return_value=False):
            colors = get_terminal_colors()
            assert all(value == '' for value in colors.values())

    def test_get_terminal_colors_all_keys_present(self):
        """Test get_terminal_colors returns all required keys."""
        colors = get_terminal_colors()
        required_keys = ['GREEN', 'CYAN', 'YELLOW', 'RED', 'DIM', 'RESET']
        assert all(key in colors for key in required_keys)


class TestHelpers:
    def test_to_pubkey(self, sol_mint):
        pubkey = Pubkey.from_string(sol_mint)
        assert to_pubkey(sol_mint) == pubkey
        assert to_pubkey(pubkey) is pubkey

    def test_to_pubkey_invalid(self):
        with pytest.raises(ValueError):
            to_pubkey("not-a-key")

    def test_short_key(self, sol_mint):
        assert short_key(sol_mint) == "So111111..."

    def test_dedupe_preserves_order(self):
        assert dedupe([3, 1, 3, 2, 1]) == [3, 1, 2]

    @pytest.mark.parametrize("raw", [
        b"\x01\x02",
        base64.b64encode(b"\x01\x02").decode(),
        [base64.b64encode(b"\x01\x02").decode(), "base64"],
    ])
    def test_b64decode_account_data(self, raw):
        assert b64decode_account_data(raw) == b"\x01\x02"

    def test_b64decode_account_data_unexpected(self):
        with pytest.raises(TypeError):
            b64decode_account_data(123)

    def test_sol_to_lamports(self):
        assert sol_to_lamports(1) == 1_000_000_000
        assert sol_to_lamports(0.000036) == 36_000
