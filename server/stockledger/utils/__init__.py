from .money import movement_total_cost, quantize_money

__all__ = ["movement_total_cost", "quantize_money"]
