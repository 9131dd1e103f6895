import math
from typing import Sequence
from arena.config import Config
from arena.utils.rounding import round_half_up

class EloCalculator:
    """Handles Elo rating calculations for wager matches"""
    
    @staticmethod
    def calculate_expected_score(rating_a: int, rating_b: int) -> float:
        """
        Calculate the expected score for player A against player B
        
        Args:
            rating_a: Player A's current Elo rating
            rating_b: Player B's current Elo rating
            
        Returns:
            Expected score (0.0 to 1.0) for player A
        """
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / 400))
    
    @staticmethod
    def get_k_factor(games_played: int) -> int:
        """
        Get the K-factor based on number of games played
        
        Args:
            games_played: Number of games the player has played for this game title
            
        Returns:
            K-factor to use in Elo calculation
        """
        if games_played < Config.NEW_PLAYER_THRESHOLD:
            return Config.K_FACTOR_NEW_PLAYER
        return Config.K_FACTOR_STANDARD
    
    @staticmethod
    def calculate_new_elo(current_rating: int, opponent_rating: int,
                          actual_score: float, games_played: int = 0) -> int:
        """
        Calculate a player's new Elo rating after a match
        
        Args:
            current_rating: Player's current Elo rating
            opponent_rating: Opponent's (or opposing side's average) Elo rating
            actual_score: Actual score (1.0 for win, 0.5 for draw, 0.0 for loss)
            games_played: Number of games the player has played
            
        Returns:
            New rating, rounded and floored at Config.MIN_ELO
        """
        expected_score = EloCalculator.calculate_expected_score(current_rating, opponent_rating)
        k_factor = EloCalculator.get_k_factor(games_played)
        
        new_rating = current_rating + k_factor * (actual_score - expected_score)
        return max(Config.MIN_ELO, round_half_up(new_rating))
    
    @staticmethod
    def calculate_team_average(ratings: Sequence[int]) -> int:
        """Average rating of a side, or the default rating for an empty side"""
        if not ratings:
            return Config.DEFAULT_ELO
        return round_half_up(sum(ratings) / len(ratings))
    
    @staticmethod
    def format_elo_change(elo_change: int) -> str:
        """Format Elo change for display with an explicit sign"""
        if elo_change > 0:
            return f"+{elo_change}"
        elif elo_change < 0:
            return str(elo_change)
        else:
            return "±0"
