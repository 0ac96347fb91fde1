# cogs/Music.py

"""
Music commands for Discord, backed by the `jukebox` engine.

Each guild gets its own `Jukebox` from the cog's registry. The cog only
translates between chat and engine: it parses arguments, joins the caller's
voice channel, calls the engine and renders the engine's display payloads as
embeds.

Key Features:
- YouTube links, Spotify tracks/playlists/albums and keyword search.
- A cursor-based queue that keeps its history, so it can loop as a whole.
- Track loop and queue loop toggles.
- Shuffle that never moves the track that is currently playing.
- Broken tracks are skipped automatically during playback.
"""

import logging
from typing import Optional

import discord
from discord.ext import commands

from jukebox.binder import AudioBinder
from jukebox.config import Settings
from jukebox.display import Display, Tone
from jukebox.engine import Jukebox, JukeboxRegistry
from jukebox.errors import InvalidPositionError, NoMatchError, ResolutionError
from jukebox.resolver import TrackResolver

logger = logging.getLogger(__name__)

TONE_COLORS = {
    Tone.INFO: discord.Color.blue(),
    Tone.SUCCESS: discord.Color.green(),
    Tone.ERROR: discord.Color.red(),
}


def render(display: Display) -> discord.Embed:
    """Builds the embed for an engine display payload."""
    embed = discord.Embed(
        title=display.title,
        description=display.description,
        url=display.url,
        color=TONE_COLORS[display.tone],
    )
    for name, value in display.rows:
        embed.add_field(name=name, value=value, inline=False)
    if display.thumbnail:
        embed.set_thumbnail(url=display.thumbnail)
    return embed


class Music(commands.Cog):
    """The main cog for handling all music-related commands and events."""

    def __init__(self, bot, settings: Optional[Settings] = None, registry: Optional[JukeboxRegistry] = None):
        self.bot = bot
        self.settings = settings or Settings.from_env()
        if registry is None:
            resolver = TrackResolver(self.settings)
            registry = JukeboxRegistry(resolver, AudioBinder(resolver), self.settings)
        # guild_id -> Jukebox
        self.registry = registry

    async def cog_unload(self):
        await self.registry.close()

    # --- Internal Helper Methods ---

    def _announcer(self, channel: discord.abc.Messageable):
        """Sends playback messages to the channel the last command came from."""
        async def announce(display: Display):
            try:
                await channel.send(embed=render(display))
            except discord.HTTPException as e:
                logger.warning('Could not send a playback message to %s: %s', channel, e)
        return announce

    def _jukebox(self, ctx: commands.Context) -> Jukebox:
        jukebox = self.registry.get(ctx.guild.id)
        jukebox.announce = self._announcer(ctx.channel)
        return jukebox

    async def _reply(self, ctx: commands.Context, description: str, tone: Tone = Tone.INFO):
        await ctx.send(embed=discord.Embed(description=description, color=TONE_COLORS[tone]))

    # --- Event Listeners ---

    @commands.Cog.listener()
    async def on_voice_state_update(self, member, before, after):
        """Drops the guild's jukebox when the bot itself is disconnected from voice."""
        if self.bot.user is None or member.id != self.bot.user.id or after.channel is not None:
            return
        jukebox = self.registry.peek(member.guild.id)
        if jukebox is not None:
            await jukebox.disconnect()
            await self.registry.discard(member.guild.id)

    async def cog_command_error(self, ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument)):
            return await self._reply(ctx, f'❌ {error}', Tone.ERROR)
        logger.error('Command %s failed', ctx.command, exc_info=error)
        await self._reply(ctx, '❌ Something went wrong while running that command.', Tone.ERROR)

    # --- User-Facing Commands ---

    @commands.command(name='play', aliases=['p'])
    async def play(self, ctx, *, query: str = None):
        """Queues a YouTube link, a Spotify link or the first search result."""
        if not ctx.author.voice or not ctx.author.voice.channel:
            return await self._reply(ctx, '❌ You must be in a voice channel to queue tracks.', Tone.ERROR)
        if not query:
            return await self._reply(ctx, 'Please enter a search query or URL of the track to play.', Tone.ERROR)

        jukebox = self._jukebox(ctx)
        await jukebox.connect(ctx.author.voice.channel)
        try:
            async with ctx.typing():
                await jukebox.enqueue(query)
        except NoMatchError:
            return await self._reply(ctx, '❌ No matching search.', Tone.ERROR)
        except ResolutionError:
            return await self._reply(ctx, '❌ Audio is unavailable for this query.', Tone.ERROR)
        await ctx.send(embed=render(jukebox.queue_view()))

    @commands.command(name='pause', aliases=['stop'])
    async def pause(self, ctx):
        """Pauses the current track."""
        track = self._jukebox(ctx).pause()
        if track is None:
            return await self._reply(ctx, 'Nothing is currently playing.')
        await self._reply(ctx, f"⏸️ '{track.title}' is paused.")

    @commands.command(name='resume')
    async def resume(self, ctx):
        """Resumes the current track."""
        track = self._jukebox(ctx).resume()
        if track is None:
            return await self._reply(ctx, 'Nothing is currently playing.')
        await self._reply(ctx, f"▶️ '{track.title}' is resumed.")

    @commands.command(name='skip', aliases=['s'])
    async def skip(self, ctx):
        """Skips the current track."""
        jukebox = self._jukebox(ctx)
        track = await jukebox.skip()
        if track is None:
            return await self._reply(ctx, 'Nothing is currently playing.')
        await self._reply(ctx, f"⏭️ Skipped '{track.title}'.")

    @commands.command(name='remove', aliases=['rm'])
    async def remove(self, ctx, position: int):
        """Removes the track at a queue position (as shown by !queue)."""
        jukebox = self._jukebox(ctx)
        try:
            track = jukebox.remove_at(position - 1)
        except InvalidPositionError:
            return await self._reply(ctx, '❌ Not a valid position.', Tone.ERROR)
        await self._reply(ctx, f"🗑️ Removed '{track.title}' from the queue.", Tone.SUCCESS)
        await ctx.send(embed=render(jukebox.queue_view()))

    @commands.command(name='shuffle')
    async def shuffle(self, ctx):
        """Shuffles the queue around the current track."""
        jukebox = self._jukebox(ctx)
        jukebox.shuffle()
        await ctx.send(embed=render(jukebox.queue_view()))

    @commands.command(name='loop')
    async def loop(self, ctx):
        """Toggles looping the current track."""
        jukebox = self._jukebox(ctx)
        track = jukebox.current
        if track is None:
            return await self._reply(ctx, 'Nothing is currently playing.')
        if jukebox.toggle_track_loop():
            await self._reply(ctx, f"🔂 '{track.title}' is now looping.")
        else:
            await self._reply(ctx, f"'{track.title}' is no longer looping.")

    @commands.command(name='loopall')
    async def loopall(self, ctx):
        """Toggles looping the entire queue."""
        if self._jukebox(ctx).toggle_queue_loop():
            await self._reply(ctx, '🔁 Now looping the entire queue.')
        else:
            await self._reply(ctx, 'No longer looping the entire queue.')

    @commands.command(name='clear')
    async def clear(self, ctx):
        """Stops playback and empties the queue."""
        self._jukebox(ctx).clear()
        await self._reply(ctx, 'Queue is now empty.', Tone.SUCCESS)

    @commands.command(name='disconnect', aliases=['kick', 'leave'])
    async def disconnect(self, ctx):
        """Clears the queue and leaves the voice channel."""
        jukebox = self.registry.peek(ctx.guild.id)
        if jukebox is None or jukebox.device.voice_client is None:
            return await self._reply(ctx, "❌ I'm not in a voice channel.", Tone.ERROR)
        await jukebox.disconnect()
        await self.registry.discard(ctx.guild.id)
        await self._reply(ctx, '👋 Disconnected.')

    @commands.command(name='queue', aliases=['q'])
    async def queue(self, ctx):
        """Lists the tracks in the queue."""
        await ctx.send(embed=render(self._jukebox(ctx).queue_view()))

    @commands.command(name='now', aliases=['np', 'nowplaying'])
    async def now(self, ctx):
        """Shows the current track and its progress."""
        display = self._jukebox(ctx).now_playing()
        if display is None:
            return await self._reply(ctx, 'Nothing is currently playing.')
        await ctx.send(embed=render(display))

    @commands.command(name='volume', aliases=['vol'])
    async def volume(self, ctx, volume: int = None):
        """Shows or sets the playback volume (0-200)."""
        jukebox = self._jukebox(ctx)
        if volume is None:
            return await self._reply(ctx, f'ℹ️ Current volume is set to **{jukebox.volume}%**.')
        if not 0 <= volume <= 200:
            return await self._reply(ctx, '❌ Volume must be between 0 and 200.', Tone.ERROR)
        jukebox.set_volume(volume)
        await self._reply(ctx, f'✅ Volume set to **{volume}%**.', Tone.SUCCESS)


async def setup(bot):
    """The entry point for loading the Music cog."""
    await bot.add_cog(Music(bot))
