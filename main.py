import asyncio
import logging
import os

import discord
from discord.ext import commands

from jukebox.config import Settings

logger = logging.getLogger(__name__)

settings = Settings.from_env()

# Define the bot's intents
intents = discord.Intents.default()
intents.message_content = True
intents.guilds = True
intents.voice_states = True

# Define the bot instance
bot = commands.Bot(command_prefix=settings.command_prefix, intents=intents, help_command=None)


@bot.event
async def on_ready():
    """Event that fires when the bot is ready and connected to Discord."""
    logger.info('Logged in as %s (%s)', bot.user.name, bot.user.id)
    await bot.change_presence(activity=discord.Activity(type=discord.ActivityType.listening,
                                                        name=f"{settings.command_prefix}play"))


async def load_cogs():
    """Loads all cogs from the 'cogs' directory."""
    cogs_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'cogs')
    for filename in sorted(os.listdir(cogs_dir)):
        if filename.endswith('.py') and not filename.startswith('_'):
            try:
                await bot.load_extension(f'cogs.{filename[:-3]}')
                logger.info('Loaded cog: %s', filename)
            except commands.ExtensionError:
                logger.exception('Failed to load cog %s', filename)


async def main():
    """Main function to load cogs and start the bot."""
    if not settings.discord_token:
        raise SystemExit('DISCORD_TOKEN is not set')
    discord.utils.setup_logging()
    async with bot:
        await load_cogs()
        await bot.start(settings.discord_token)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot shutting down...")
