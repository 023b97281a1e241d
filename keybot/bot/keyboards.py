# keybot/bot/keyboards.py
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

def giveaway_kb(round_id: int):
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🎁 Get key", callback_data=f"claim:{round_id}")],
        ]
    )
