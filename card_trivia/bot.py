import discord
from discord.ext import commands
import logging
import asyncio
from typing import Any, Dict, Optional
import os

from .card_resolver import CardDraw, CardType
from .config_manager import ConfigManager
from .game_controller import GameController, TableState
from .question_supply import QuestionSupply

logger = logging.getLogger(__name__)

CARD_TEXT = {
    CardType.REVELATION: ("🔮 Revelation", "Two wrong answers are about to vanish..."),
    CardType.MIRACLE: ("✨ Miracle", "{name} jumps to one point from victory!"),
    CardType.REVERSAL: ("🔄 Reversal", "The leader and the last player swap scores!"),
    CardType.BLESSING: ("🍀 Blessing", "{name} gains a free point!"),
    CardType.TRIAL: ("⚡ Trial", "{name} loses {penalty} point(s)!"),
}

TIER_EMOJI = {
    'easy': "🟢",
    'medium': "🟡",
    'hard': "🔴",
}


class CardTriviaBot(commands.Bot):
    """Discord bot hosting pass-and-play card trivia tables"""

    def __init__(self, config=None):
        # Slash commands only need the guilds intent
        intents = discord.Intents.none()
        intents.guilds = True

        command_prefix = '!'
        if config and 'bot' in config:
            command_prefix = config['bot'].get('command_prefix', '!')

        super().__init__(
            command_prefix=command_prefix,
            intents=intents,
            help_command=None
        )

        self.app_config = config or {}

        self.question_supply: Optional[QuestionSupply] = None
        self.config_manager: Optional[ConfigManager] = None
        self.game_controller: Optional[GameController] = None

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager()
            if self.app_config:
                self.apply_configuration()

            self.question_supply = QuestionSupply(self.config_manager.get_question_directory())
            self.game_controller = GameController(
                self.question_supply,
                self.config_manager,
                event_handler=self.handle_game_event
            )

            await self.load_question_data()
            await self.setup_commands()

            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    def apply_configuration(self):
        """Apply settings from configuration file to the config manager."""
        errors = self.config_manager.apply_config(self.app_config)
        if errors:
            # Defaults stay in place for rejected entries
            logger.warning(f"Configuration applied with {len(errors)} rejected entries")
        else:
            logger.info("Configuration applied successfully")

        validation = self.config_manager.validate_settings()
        if not validation['valid']:
            for issue in validation['issues']:
                logger.warning(f"Configuration issue: {issue}")
            self.config_manager.reset_to_defaults()
            logger.warning("Inconsistent configuration, falling back to default settings")

    async def setup_commands(self):
        """Register all slash commands"""
        @self.tree.command(name="help", description="Display available commands and the rules")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        @self.tree.command(name="new_game", description="Open a table in this channel (target 5-50 points)")
        async def new_game_command(interaction: discord.Interaction, target_score: Optional[int] = None):
            await self.handle_new_game(interaction, target_score)

        @self.tree.command(name="join", description="Seat a player at the table (tier: easy, medium or hard)")
        async def join_command(interaction: discord.Interaction, name: str, tier: str):
            await self.handle_join(interaction, name, tier)

        @self.tree.command(name="leave", description="Remove a player from the table before the game starts")
        async def leave_command(interaction: discord.Interaction, name: str):
            await self.handle_leave(interaction, name)

        @self.tree.command(name="start", description="Start the game with the seated players")
        async def start_command(interaction: discord.Interaction):
            await self.handle_start(interaction)

        @self.tree.command(name="answer", description="Answer the current question (1-4)")
        async def answer_command(interaction: discord.Interaction, number: int):
            await self.handle_answer(interaction, number)

        @self.tree.command(name="share", description="Share your streak bonus with a player, or 'skip'")
        async def share_command(interaction: discord.Interaction, player: str):
            await self.handle_share(interaction, player)

        @self.tree.command(name="restart", description="Replay with the same players")
        async def restart_command(interaction: discord.Interaction):
            await self.handle_restart(interaction)

        @self.tree.command(name="stop", description="Stop the game and clear the table")
        async def stop_command(interaction: discord.Interaction):
            await self.handle_stop(interaction)

        @self.tree.command(name="status", description="Show scores and the state of the table")
        async def status_command(interaction: discord.Interaction):
            await self.handle_status(interaction)

        @self.tree.command(name="reload", description="Reload question files and resume a table that ran out of questions")
        async def reload_command(interaction: discord.Interaction):
            await self.handle_reload(interaction)

        logger.info("Slash commands registered successfully")

    async def load_question_data(self):
        """Load question files from the configured directory"""
        questions = await self.question_supply.load_all()
        summary = self.question_supply.get_loading_summary()
        logger.info(
            f"Loaded {len(questions)} questions from {summary['question_directory']} "
            f"(by tier: {summary['by_tier']})"
        )
        if summary['has_errors']:
            logger.warning(f"{summary['error_count']} question loading errors, see log for details")

    async def on_ready(self):
        """Called when the bot has successfully connected to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        logger.info(f"Bot is in {len(self.guilds)} guilds")
        print(f"🃏 {self.user} is Ready and Online!")

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
            print(f"⚡ Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")
            print(f"❌ Failed to sync slash commands: {e}")

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors"""
        logger.error(f"An error occurred in event {event}", exc_info=True)

    async def close(self):
        if self.game_controller is not None:
            await self.game_controller.shutdown()
        await super().close()

    # Game events

    async def handle_game_event(self, channel_id: int, event: str, payload: Dict[str, Any]):
        """Render a controller event in its channel"""
        channel = self.get_channel(channel_id)
        if channel is None:
            logger.warning(f"Dropping {event} event: channel {channel_id} not found")
            return

        builders = {
            'game_started': self.build_game_started_embed,
            'question_presented': self.build_question_embed,
            'card_drawn': self.build_card_embed,
            'card_dismissed': None,
            'answers_eliminated': self.build_elimination_embed,
            'shared_bonus_offer': self.build_offer_embed,
            'pool_exhausted': self.build_pool_exhausted_embed,
            'game_finished': self.build_results_embed,
        }
        if event not in builders:
            logger.warning(f"Unknown game event {event} for channel {channel_id}")
            return
        builder = builders[event]
        if builder is None:
            return

        await self.send_with_retry(channel.send, builder(payload))

    async def send_with_retry(self, send_func, embed: discord.Embed, max_retries: int = 3):
        """Send an embed with retry logic for Discord API failures"""
        for attempt in range(max_retries):
            try:
                await send_func(embed=embed)
                return
            except discord.HTTPException as e:
                if attempt == max_retries - 1:
                    logger.error(f"All retry attempts failed for game message: {e}")
                    raise
                wait_time = 2 ** attempt
                logger.warning(f"Discord API error (attempt {attempt + 1}), retrying in {wait_time}s: {e}")
                await asyncio.sleep(wait_time)

    def build_game_started_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        snapshot = payload['snapshot']
        embed = discord.Embed(
            title="🃏 Game Started!",
            description=f"First to **{snapshot.target_score}** points wins",
            color=0x00ff00
        )
        embed.add_field(
            name="Players",
            value="\n".join(
                f"{i}. {TIER_EMOJI[p.tier.value]} {p.name} ({p.tier.value})"
                for i, p in enumerate(snapshot.players, start=1)
            ),
            inline=False
        )
        embed.set_footer(text="Answer with /answer <number>")
        return embed

    def build_question_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        player = payload['player']
        question = payload['question']
        embed = discord.Embed(
            title=f"❓ {player.name}'s turn",
            description=f"**{question.prompt}**",
            color=0x0099ff
        )
        embed.add_field(
            name="Answers",
            value="\n".join(
                f"**{i}.** {answer}" for i, answer in enumerate(payload['answers'], start=1)
            ),
            inline=False
        )
        embed.set_footer(text=f"{TIER_EMOJI[player.tier.value]} {player.tier.value} | {player.score} point(s)")
        return embed

    def build_card_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        card: CardDraw = payload['card']
        snapshot = payload['snapshot']
        player = snapshot.current_player
        title, text = CARD_TEXT[card.card_type]
        penalty = -card.effect.delta if card.effect is not None else 0
        embed = discord.Embed(
            title=title,
            description=text.format(name=player.name, penalty=penalty),
            color=0x9b59b6
        )
        if card.effect is not None:
            embed.add_field(name="Scores", value=self.format_scores(snapshot), inline=False)
        return embed

    def build_elimination_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        positions = ", ".join(str(p + 1) for p in payload['positions'])
        return discord.Embed(
            title="🔮 Answers eliminated",
            description=f"Answers {positions} are wrong. Choose among the rest!",
            color=0x9b59b6
        )

    def build_offer_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        player = payload['player']
        embed = discord.Embed(
            title="🔥 Three in a row!",
            description=f"{player.name} may give a bonus point to another player.",
            color=0xffaa00
        )
        embed.add_field(
            name="Choose with /share",
            value="\n".join(f"• {p.name}" for p in payload['candidates']) + "\n• skip",
            inline=False
        )
        return embed

    def build_pool_exhausted_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        player = payload['player']
        return discord.Embed(
            title="📭 Out of questions",
            description=(
                f"No {player.tier.value} questions left for {player.name}.\n"
                "Add question files and use `/reload` to continue, `/restart` to replay or `/stop` to end the game."
            ),
            color=0xff6600
        )

    def build_results_embed(self, payload: Dict[str, Any]) -> discord.Embed:
        medals = ["🥇", "🥈", "🥉"]
        embed = discord.Embed(
            title="🏆 Game Over!",
            color=0xffd700
        )
        embed.add_field(
            name="Podium",
            value="\n".join(
                f"{medals[i]} {row['name']} - {row['score']} pts"
                for i, row in enumerate(payload['podium'])
            ),
            inline=False
        )
        if len(payload['standings']) > len(payload['podium']):
            embed.add_field(
                name="Standings",
                value="\n".join(
                    f"{row['rank']}. {row['name']} - {row['score']} pts"
                    for row in payload['standings']
                ),
                inline=False
            )
        embed.set_footer(text="Use /restart to play again or /new_game for a new table")
        return embed

    def format_scores(self, snapshot) -> str:
        return "\n".join(f"{p.name}: {p.score}" for p in snapshot.players)

    # Command handlers

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        try:
            help_embed = discord.Embed(
                title="🃏 Card Trivia Commands",
                description="Take turns answering questions at your own level. Event cards may change everything.",
                color=0x00ff00
            )
            help_embed.add_field(
                name="📋 Table Setup",
                value=(
                    "`/new_game [target]` - Open a table (5-50 points, default from settings)\n"
                    "`/join <name> <tier>` - Seat a player (easy, medium, hard)\n"
                    "`/leave <name>` - Remove a seated player\n"
                    "`/start` - Start the game (1-8 players)"
                ),
                inline=False
            )
            help_embed.add_field(
                name="🎮 Playing",
                value=(
                    "`/answer <number>` - Answer for the current player\n"
                    "`/share <player|skip>` - Give away a streak bonus\n"
                    "`/restart` - Replay with the same players\n"
                    "`/stop` - End the game\n"
                    "`/status` - Show scores\n"
                    "`/reload` - Reload question files"
                ),
                inline=False
            )
            help_embed.add_field(
                name="⚙️ Current Settings",
                value=f"```\n{self.config_manager.get_settings_summary()}\n```",
                inline=False
            )
            help_embed.set_footer(text="Use slash commands to interact with the bot")
            await interaction.response.send_message(embed=help_embed)

        except discord.HTTPException as e:
            logger.error(f"Error in help command: {e}")
            await self.send_error_response(interaction, "Failed to display help", "❌ Help Error")

    async def handle_new_game(self, interaction: discord.Interaction, target_score: Optional[int]):
        """Handle /new_game command"""
        result = self.game_controller.open_lobby(interaction.channel_id, target_score)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Open Table")
            return
        await self.send_info_response(interaction, result['user_message'], "🃏 Table Open", ephemeral=False)

    async def handle_join(self, interaction: discord.Interaction, name: str, tier: str):
        """Handle /join command"""
        result = self.game_controller.add_player(interaction.channel_id, name, tier)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Join")
            return
        await self.send_info_response(
            interaction,
            f"{result['user_message']} ({result['player_count']} seated)",
            "👤 Player Joined",
            ephemeral=False
        )

    async def handle_leave(self, interaction: discord.Interaction, name: str):
        """Handle /leave command"""
        result = self.game_controller.remove_player(interaction.channel_id, name)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Remove Player")
            return
        await self.send_info_response(interaction, result['user_message'], "👋 Player Left", ephemeral=False)

    async def handle_start(self, interaction: discord.Interaction):
        """Handle /start command"""
        if not self.question_supply.questions:
            embed = discord.Embed(
                title="❌ No Questions Available",
                description="No question files found or all files failed to load.",
                color=0xff0000
            )
            errors = self.question_supply.get_load_errors()
            if errors:
                error_text = "\n".join(errors[:3])
                if len(errors) > 3:
                    error_text += "\n... and more"
                embed.add_field(name="Loading Errors", value=f"```\n{error_text}\n```", inline=False)
            await interaction.response.send_message(embed=embed, ephemeral=True)
            return

        # The first question is posted by the controller, so answer the interaction first
        await interaction.response.defer()
        result = await self.game_controller.start_game(interaction.channel_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Start")
            return
        await interaction.followup.send(result['user_message'])

    async def handle_answer(self, interaction: discord.Interaction, number: int):
        """Handle /answer command"""
        result = await self.game_controller.submit_answer(interaction.channel_id, number - 1)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Answer Not Accepted")
            return

        correct_number = result['correct_position'] + 1
        if result['is_correct']:
            embed = discord.Embed(
                title="✅ Correct!",
                description=f"{result['player'].name} found it: **{result['correct_answer']}**",
                color=0x00ff00
            )
        else:
            embed = discord.Embed(
                title="❌ Wrong!",
                description=f"The answer was **{correct_number}. {result['correct_answer']}**",
                color=0xff0000
            )
        try:
            await interaction.response.send_message(embed=embed)
        except discord.HTTPException as e:
            logger.error(f"Failed to send answer feedback: {e}")

    async def handle_share(self, interaction: discord.Interaction, player: str):
        """Handle /share command"""
        channel_id = interaction.channel_id
        target_id = None
        if player.strip().lower() != "skip":
            status = self.game_controller.get_table_status(channel_id)
            matches = [p['id'] for p in (status or {}).get('players', [])
                       if p['name'].lower() == player.strip().lower()]
            if not matches:
                await self.send_error_response(interaction, f"❌ Nobody called {player} is playing", "❌ Unknown Player")
                return
            target_id = matches[0]

        await interaction.response.defer()
        result = await self.game_controller.resolve_shared_bonus(channel_id, target_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Share")
            return
        await interaction.followup.send(result['user_message'])

    async def handle_restart(self, interaction: discord.Interaction):
        """Handle /restart command"""
        await interaction.response.defer()
        result = await self.game_controller.restart_game(interaction.channel_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Restart")
            return
        await interaction.followup.send(result['user_message'])

    async def handle_stop(self, interaction: discord.Interaction):
        """Handle /stop command"""
        channel_id = interaction.channel_id
        results = self.game_controller.get_results(channel_id)
        result = await self.game_controller.stop_game(channel_id)

        if not result['success']:
            embed = discord.Embed(
                title="ℹ️ No Active Game",
                description=result['user_message'],
                color=0x6699ff
            )
            embed.add_field(name="Start a Game", value="Use `/new_game` to open a table", inline=False)
            await interaction.response.send_message(embed=embed, ephemeral=True)
            return

        embed = discord.Embed(title="🛑 Game Stopped", color=0xff6600)
        if results:
            embed.add_field(
                name="📊 Final Scores",
                value="\n".join(f"{row['rank']}. {row['name']} - {row['score']} pts" for row in results['standings']),
                inline=False
            )
        embed.set_footer(text="Use /new_game to open a new table")
        await interaction.response.send_message(embed=embed)

    async def handle_status(self, interaction: discord.Interaction):
        """Handle /status command"""
        channel_id = interaction.channel_id
        status = self.game_controller.get_table_status(channel_id)

        if status is None:
            embed = discord.Embed(
                title="ℹ️ No Table",
                description="There is no table in this channel.",
                color=0x6699ff
            )
            summary = self.question_supply.get_loading_summary()
            embed.add_field(
                name="📚 Questions",
                value=", ".join(f"{tier}: {count}" for tier, count in summary['by_tier'].items()),
                inline=False
            )
            embed.add_field(name="🎯 Start a Game", value="Use `/new_game` to open a table", inline=False)
            await interaction.response.send_message(embed=embed, ephemeral=True)
            return

        state = TableState(status['state'])
        state_text = {
            TableState.LOBBY: ("📋", "Lobby", 0x6699ff),
            TableState.PLAYING: ("▶️", "Playing", 0x00ff00),
            TableState.AWAITING_OFFER: ("🔥", "Waiting for a bonus decision", 0xffaa00),
            TableState.BLOCKED: ("📭", "Out of questions", 0xff6600),
            TableState.FINISHED: ("🏆", "Finished", 0xffd700),
        }
        emoji, label, color = state_text[state]
        embed = discord.Embed(
            title=f"{emoji} Table Status - {label}",
            description=f"Target: **{status['target_score']}** points",
            color=color
        )

        if state is TableState.LOBBY:
            seated = "\n".join(
                f"{TIER_EMOJI[e['tier']]} {e['name']}" for e in status['lobby']
            ) or "Nobody yet. Use `/join`."
            embed.add_field(name="👥 Seated", value=seated, inline=False)
        else:
            embed.add_field(
                name="📊 Scores",
                value="\n".join(
                    f"{'▶ ' if p['name'] == status['current_player'] else ''}{p['name']}: "
                    f"{p['score']} (streak {p['streak']})"
                    for p in status['players']
                ),
                inline=False
            )
            if status['active_card']:
                embed.add_field(name="🃏 Card in play", value=status['active_card'], inline=True)
            if status['blocked_reason']:
                embed.add_field(name="⚠️ Blocked", value=status['blocked_reason'], inline=False)

        embed.set_footer(text="Use /help to see all available commands")
        await interaction.response.send_message(embed=embed)

    async def handle_reload(self, interaction: discord.Interaction):
        """Handle /reload command"""
        channel_id = interaction.channel_id
        await interaction.response.defer()

        result = await self.game_controller.reload_questions()
        summary = result['summary']
        embed = discord.Embed(
            title="📚 Questions Reloaded" if result['success'] else "❌ No Questions Loaded",
            description=", ".join(f"{tier}: {count}" for tier, count in summary['by_tier'].items()),
            color=0x00ff00 if result['success'] else 0xff0000
        )
        if summary['has_errors']:
            embed.add_field(name="⚠️ Loading Errors", value=f"{summary['error_count']} records skipped", inline=False)

        # Only a blocked table needs a new question; others keep the one on screen
        status = self.game_controller.get_table_status(channel_id)
        if status and status['blocked_reason']:
            resumed = await self.game_controller.present_next_question(channel_id)
            embed.add_field(
                name="▶️ Game",
                value="Resumed" if resumed['success'] else resumed['user_message'],
                inline=False
            )
        await interaction.followup.send(embed=embed)

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send error response to user with fallback handling"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=0xff0000
            )
            embed.set_footer(text="If this error persists, try using /help for available commands")

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)

        except discord.HTTPException as e:
            logger.error(f"Failed to send error embed: {e}")
            try:
                simple_message = f"{title}: {message}"
                if interaction.response.is_done():
                    await interaction.followup.send(simple_message, ephemeral=True)
                else:
                    await interaction.response.send_message(simple_message, ephemeral=True)
            except discord.HTTPException:
                logger.error("Failed to send fallback error message")

    async def send_info_response(
        self,
        interaction: discord.Interaction,
        message: str,
        title: str = "ℹ️ Information",
        ephemeral: bool = True
    ):
        """Send formatted info response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=0x6699ff
            )

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=ephemeral)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=ephemeral)
        except discord.HTTPException:
            logger.error("Failed to send info response to user")


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = CardTriviaBot(config)

    try:
        logger.info("Starting Card Trivia Bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()
