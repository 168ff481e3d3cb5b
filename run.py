#!/usr/bin/env python3
"""
Simple launcher script for the margin transaction pipeline.
"""
import argparse
import sys
from margin_pipeline.main import main
import asyncio

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Margin transaction pipeline')
    parser.add_argument(
        'mode',
        nargs='?',
        default='quote',
        choices=['quote', 'simulate', 'send'],
        help='Operation mode: quote (default), simulate, or send'
    )
    parser.add_argument('--input-mint', required=True, help='Mint to sell')
    parser.add_argument('--output-mint', required=True, help='Mint to buy')
    parser.add_argument('--amount', type=int, required=True, help='Amount in base units')
    parser.add_argument('--slippage-bps', type=int, default=50, help='Slippage tolerance in bps (default: 50)')
    parser.add_argument('--swap-mode', default='ExactIn', choices=['ExactIn', 'ExactOut'])
    parser.add_argument('--venue', default='jupiter', choices=['jupiter', 'pool'], help='Preferred venue')
    parser.add_argument('--pool-id', help='AMM pool address for the pool venue')
    parser.add_argument('--margin-pool', help='BasePool whose open or close leg this swap is (pool venue)')

    args = parser.parse_args()

    try:
        exit_code = asyncio.run(main(
            mode=args.mode,
            input_mint=args.input_mint,
            output_mint=args.output_mint,
            amount=args.amount,
            slippage_bps=args.slippage_bps,
            swap_mode=args.swap_mode,
            venue=args.venue,
            pool_id=args.pool_id,
            margin_pool=args.margin_pool
        ))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(0)
